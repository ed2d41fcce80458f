"""
Exception hierarchy and error rendering for iamctl.

Remote failures are classified once, where the boto3 call is made, into
credential / permission / service errors. The rotation workflow wraps that
classification in one of its own error kinds without re-deriving it.
"""

import re

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

CREDENTIAL_ERROR_CODES = frozenset(
    {
        "InvalidClientTokenId",
        "UnrecognizedClientException",
        "SignatureDoesNotMatch",
        "ExpiredToken",
        "ExpiredTokenException",
        "InvalidAccessKeyId",
    }
)

PERMISSION_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
    }
)

# Service error codes that may be shown to the operator verbatim
KNOWN_SERVICE_ERROR_CODES = frozenset(
    {
        "NoSuchEntity",
        "LimitExceeded",
        "EntityAlreadyExists",
        "PasswordPolicyViolation",
        "ResourceExistsException",
        "ResourceNotFoundException",
        "InvalidRequestException",
        "InvalidParameterException",
        "Throttling",
        "ThrottlingException",
        "ServiceFailure",
        "InternalFailure",
        "InvalidAuthenticationCode",
    }
)

ACCESS_KEY_ID_PATTERN = re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{12,}\b")


class IamctlError(Exception):
    """Base exception for all iamctl errors."""

    category = "service"


class AwsCallError(IamctlError):
    """A classified failure of a single AWS API call."""

    def __init__(self, message, code=None, operation=None, original=None):
        super().__init__(message)
        self.code = code
        self.operation = operation
        self.original = original


class CredentialError(AwsCallError):
    """The caller's credentials are missing, invalid, or expired."""

    category = "credential"


class PermissionDeniedError(AwsCallError):
    """The caller is authenticated but not allowed to perform the call."""

    category = "permission"


class ServiceError(AwsCallError):
    """Any other failure reported by, or while reaching, the AWS service."""

    category = "service"


class DeadlineExceededError(IamctlError):
    """The operation ran past its deadline, before or during a remote call."""

    category = "timeout"


class VerificationRejectedError(IamctlError):
    """A key pair authenticated, but as a different identity than expected."""

    category = "credential"


def classify_client_error(error):
    """
    Classify a botocore ClientError by its AWS error code.

    Args:
        error: botocore.exceptions.ClientError

    Returns:
        AwsCallError: CredentialError, PermissionDeniedError or ServiceError
    """
    code = error.response.get("Error", {}).get("Code")
    operation = getattr(error, "operation_name", None)
    message = f"{operation or 'AWS call'} failed ({code or 'unknown error'})"

    if code in CREDENTIAL_ERROR_CODES:
        cls = CredentialError
    elif code in PERMISSION_ERROR_CODES:
        cls = PermissionDeniedError
    else:
        cls = ServiceError
    return cls(message, code=code, operation=operation, original=error)


def classify_error(error, operation=None):
    """
    Map any exception raised by a remote call to an iamctl error.

    Already classified errors are returned unchanged.
    """
    if isinstance(error, IamctlError):
        return error
    if isinstance(error, ClientError):
        return classify_client_error(error)
    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return CredentialError(
            f"{operation or 'AWS call'} failed (no usable credentials)",
            operation=operation,
            original=error,
        )
    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
        return DeadlineExceededError(f"{operation or 'AWS call'} timed out")
    if isinstance(error, BotoCoreError):
        return ServiceError(
            f"{operation or 'AWS call'} failed ({type(error).__name__})",
            operation=operation,
            original=error,
        )
    return ServiceError(
        f"{operation or 'call'} failed ({type(error).__name__})",
        operation=operation,
        original=error,
    )


class RotationError(IamctlError):
    """
    Base class for access key rotation failures.

    Attributes:
        attempt: The RotationAttempt as it stood when the failure happened
        cause: The classified error of the failing step
    """

    kind = "rotation"
    severity = "error"

    def __init__(self, message, attempt=None, cause=None):
        super().__init__(message)
        self.attempt = attempt
        self.cause = cause

    @property
    def category(self):
        if self.cause is None:
            return "service"
        return getattr(self.cause, "category", "service")


class CreationFailedError(RotationError):
    """The new access key could not be created. Nothing was changed."""

    kind = "creation"


class VerificationFailedError(RotationError):
    """The new access key could not be confirmed as usable."""

    kind = "verification"


class PersistenceFailedError(RotationError):
    """The new access key could not be written to the secret vault."""

    kind = "persistence"


class RetirementFailedError(RotationError):
    """
    The new key is verified and stored, but the old key is still live.

    The rotation result is attached so callers can keep using the new key.
    """

    kind = "retirement"
    severity = "warning"

    def __init__(self, message, attempt=None, cause=None, result=None):
        super().__init__(message, attempt=attempt, cause=cause)
        self.result = result


class RollbackFailedError(RotationError):
    """
    A rotation step failed and deleting the new key failed too.

    Both the old and the new key are live. Requires operator intervention.
    """

    kind = "rollback"
    severity = "critical"

    def __init__(self, message, attempt=None, cause=None, primary=None):
        super().__init__(message, attempt=attempt, cause=cause)
        self.primary = primary

    @property
    def category(self):
        # Report what broke the rotation, not what broke the cleanup
        if self.primary is not None:
            return self.primary.category
        return super().category


def mask_key_id(key_id):
    """Mask an access key id for display, e.g. AKIAIOSFOD***."""
    if not key_id:
        return "<none>"
    return f"{key_id[:10]}***"


def redact(text, secrets=()):
    """
    Remove access key ids and the given secret values from text.

    Args:
        text: Arbitrary message text
        secrets: Iterable of literal values to blank out

    Returns:
        str: Redacted text
    """
    text = str(text)
    for secret in secrets:
        if secret:
            text = text.replace(secret, "****")
    return ACCESS_KEY_ID_PATTERN.sub(lambda m: mask_key_id(m.group(0)), text)


def _describe_cause(error):
    parts = [f"{getattr(error, 'category', 'service')} error"]
    code = getattr(error, "code", None)
    if code and (
        code in CREDENTIAL_ERROR_CODES
        or code in PERMISSION_ERROR_CODES
        or code in KNOWN_SERVICE_ERROR_CODES
    ):
        parts.append(code)
    operation = getattr(error, "operation", None)
    if operation and re.fullmatch(r"[A-Za-z]+", operation):
        parts.append(f"during {operation}")
    return " ".join(parts)


def safe_message(error):
    """
    Render an error for the operator from allowlisted fields only.

    Free-form service messages can carry ARNs, key ids or request details,
    so only the category, a known AWS error code and the operation name are
    included. Rotation errors also name the failing step and, for rollback
    failures, the primary failure.

    Args:
        error: Any exception

    Returns:
        str: Message safe to print
    """
    if isinstance(error, RollbackFailedError):
        primary = safe_message(error.primary) if error.primary else "unknown failure"
        cleanup = _describe_cause(error.cause) if error.cause else "unknown error"
        return f"{primary}; rollback failed ({cleanup})"
    if isinstance(error, RotationError):
        if error.cause is None:
            return f"{error.kind} failed"
        return f"{error.kind} failed: {_describe_cause(error.cause)}"
    if isinstance(error, DeadlineExceededError):
        return "timeout error: deadline exceeded"
    if isinstance(error, (AwsCallError, VerificationRejectedError)):
        return _describe_cause(error)
    if isinstance(error, IamctlError):
        return redact(error)
    return f"unexpected error ({type(error).__name__})"
