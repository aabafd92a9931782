class ProvisioningError(Exception):
    pass


class ConfigurationError(ProvisioningError):
    pass


class RecordValidationError(ProvisioningError):
    pass


class MissingNameFields(RecordValidationError):
    def __init__(self, message: str = "missing name fields") -> None:
        super().__init__(message)


class MissingLogin(RecordValidationError):
    def __init__(self, message: str = "login missing") -> None:
        super().__init__(message)


class DirectoryOperationFailure(ProvisioningError):
    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class LoginResolutionError(DirectoryOperationFailure):
    def __init__(self, candidate: str, detail: str) -> None:
        super().__init__("login lookup", f"{candidate}: {detail}")
        self.candidate = candidate
