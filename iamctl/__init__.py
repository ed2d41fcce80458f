"""
iamctl: manage AWS IAM credentials from the command line.

Rotates access keys as a compensating transaction (create, verify, store in
Secrets Manager, retire the old key, roll back the new key on failure), and
wraps the other everyday IAM chores: disabling keys, MFA enrollment, password
resets and account-wide policy enforcement.

Key features:
- Access key rotation that never deletes the old key before the new one is
  verified and stored
- Distinct reporting of incomplete cleanup and failed rollback
- Errors classified as credential, permission, service or timeout problems
- Bounded timeouts on every AWS call
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .backends import IamKeyStore, SecretsManagerVault
from .errors import (
    CreationFailedError,
    CredentialError,
    IamctlError,
    PermissionDeniedError,
    PersistenceFailedError,
    RetirementFailedError,
    RollbackFailedError,
    RotationError,
    ServiceError,
    VerificationFailedError,
)
from .rotation import (
    AccessKeyPair,
    Deadline,
    IdentityKeyStore,
    KeyMetadata,
    KeyRotationCoordinator,
    Phase,
    RetirementPolicy,
    RotationAttempt,
    RotationResult,
    SecretVault,
)

__all__ = [
    # Rotation workflow
    "KeyRotationCoordinator",
    "RetirementPolicy",
    "RotationResult",
    "RotationAttempt",
    "Phase",
    "Deadline",
    # Data model
    "AccessKeyPair",
    "KeyMetadata",
    # Collaborators
    "IdentityKeyStore",
    "SecretVault",
    "IamKeyStore",
    "SecretsManagerVault",
    # Errors
    "IamctlError",
    "CredentialError",
    "PermissionDeniedError",
    "ServiceError",
    "RotationError",
    "CreationFailedError",
    "VerificationFailedError",
    "PersistenceFailedError",
    "RetirementFailedError",
    "RollbackFailedError",
]
