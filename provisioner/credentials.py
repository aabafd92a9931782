from collections.abc import Iterable, Mapping
import secrets
import string

from provisioner.errors import ConfigurationError
from provisioner.schemas import CredentialMode, CredentialPolicy, CredentialResult


SPECIAL_CHARACTERS = "!@#$%&*?-_+="
FIXED_ECHO = "Set by administrator"
FALLBACK_WARNING = "credential column empty, fallback used"


def _character_classes(include_special: bool) -> list[str]:
    classes = [string.ascii_uppercase, string.ascii_lowercase, string.digits]
    if include_special:
        classes.append(SPECIAL_CHARACTERS)
    return classes


def validate_credential_policy(policy: CredentialPolicy, input_columns: Iterable[str] | None = None) -> None:
    if policy.mode is CredentialMode.FIXED:
        if not policy.fixed_value:
            raise ConfigurationError("fixed credential mode requires a credential value")
    elif policy.mode is CredentialMode.GENERATED:
        minimum = len(_character_classes(policy.include_special))
        if policy.length < minimum:
            raise ConfigurationError(f"generated credential length must be at least {minimum}")
    elif policy.mode is CredentialMode.SOURCED:
        if not policy.source_column:
            raise ConfigurationError("sourced credential mode requires a source column")
        if input_columns is not None and policy.source_column not in set(input_columns):
            raise ConfigurationError(f"credential column '{policy.source_column}' is not in the input")
        if not policy.fallback_value:
            raise ConfigurationError("sourced credential mode requires a fallback credential")


def generate_secret(length: int = 12, include_special: bool = True) -> str:
    classes = _character_classes(include_special)
    if length < len(classes):
        raise ConfigurationError(f"generated credential length must be at least {len(classes)}")

    alphabet = "".join(classes)
    chars = [secrets.choice(charset) for charset in classes]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(classes)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def issue(policy: CredentialPolicy, record: Mapping[str, str]) -> CredentialResult:
    if policy.mode is CredentialMode.FIXED:
        return CredentialResult(secret=policy.fixed_value or "", display_echo=FIXED_ECHO)

    if policy.mode is CredentialMode.GENERATED:
        secret = generate_secret(policy.length, policy.include_special)
        return CredentialResult(secret=secret, display_echo=secret)

    value = str(record.get(policy.source_column or "") or "")
    if not value.strip():
        return CredentialResult(
            secret=policy.fallback_value,
            display_echo=policy.fallback_value,
            warning=FALLBACK_WARNING,
        )
    return CredentialResult(secret=value, display_echo=value)
