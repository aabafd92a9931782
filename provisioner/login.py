import logging
import unicodedata

from provisioner.directory import DirectoryEntry, DirectoryService
from provisioner.errors import ConfigurationError, LoginResolutionError, MissingNameFields
from provisioner.schemas import LoginFormat, LoginPolicy


logger = logging.getLogger(__name__)

MAX_LOGIN_LENGTH = 20

_FORMATS = {
    LoginFormat.INITIAL_SURNAME: lambda first, last: first[:1] + last,
    LoginFormat.NAME_INITIAL: lambda first, last: first + last[:1],
    LoginFormat.FIRST_DOT_LAST: lambda first, last: f"{first}.{last}",
    LoginFormat.LAST_DOT_FIRST: lambda first, last: f"{last}.{first}",
    LoginFormat.FIRST_UNDERSCORE_LAST: lambda first, last: f"{first}_{last}",
    LoginFormat.LAST_UNDERSCORE_FIRST: lambda first, last: f"{last}_{first}",
}


def normalize_name(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if ch.isascii() and ch.isalnum()).lower()


def validate_login_policy(policy: LoginPolicy) -> None:
    if policy.format is LoginFormat.CUSTOM_TEMPLATE:
        template = policy.template or ""
        if "{first}" not in template and "{last}" not in template:
            raise ConfigurationError("custom login template needs a {first} or {last} placeholder")


def build_candidate(given_name: str, surname: str, policy: LoginPolicy) -> str:
    first = normalize_name(given_name or "")
    last = normalize_name(surname or "")
    if not first or not last:
        raise MissingNameFields()

    if policy.format is LoginFormat.CUSTOM_TEMPLATE:
        candidate = (policy.template or "").replace("{first}", first).replace("{last}", last)
    else:
        candidate = _FORMATS[policy.format](first, last)

    candidate = "".join(ch for ch in candidate.lower() if ch.isascii() and ch.isalnum())
    if not candidate:
        raise MissingNameFields()
    return candidate[:MAX_LOGIN_LENGTH]


def suffixed(base: str, number: int) -> str:
    suffix = str(number)
    return base[: MAX_LOGIN_LENGTH - len(suffix)] + suffix


def _same_person(entry: DirectoryEntry, given_name: str, surname: str) -> bool:
    attributes = entry.attributes
    return (
        normalize_name(attributes.get("givenName", "")) == normalize_name(given_name)
        and normalize_name(attributes.get("sn", "")) == normalize_name(surname)
    )


def resolve_unique_login(
    candidate: str,
    directory: DirectoryService,
    given_name: str | None = None,
    surname: str | None = None,
) -> str:
    """Walk candidate, candidate1, candidate2... until a free login turns up.

    When names are given, an occupied login whose entry carries the same
    given name and surname is returned as is, so the caller sees the person
    as already provisioned instead of minting another suffix.
    """
    login = candidate
    number = 0
    while True:
        try:
            existing = directory.find_by_unique_id(login)
        except Exception as exc:
            raise LoginResolutionError(login, str(exc)) from exc
        if existing is None:
            break
        if given_name and surname and _same_person(existing, given_name, surname):
            logger.info("login already held by the same person", extra={"candidate": candidate, "login": login})
            return login
        number += 1
        login = suffixed(candidate, number)

    if number:
        logger.info("login collision resolved", extra={"candidate": candidate, "login": login})
    return login


def synthesize_login(given_name: str, surname: str, policy: LoginPolicy, directory: DirectoryService) -> str:
    candidate = build_candidate(given_name, surname, policy)
    return resolve_unique_login(candidate, directory, given_name, surname)
