"""
Access key rotation as a compensating transaction.

The coordinator drives a fixed sequence of steps against two collaborators:

    create -> verify -> persist -> retire

Side effects are additive until the retire step. If verification or
persistence fails, the freshly created key is deleted again (rollback). A
failed retirement is not rolled back: by then the new key is verified and
stored, so both keys are left live and the failure is reported as a warning.

The sequence is an explicit state machine. _NEXT_STEP says which step runs in
a given phase, _ON_SUCCESS which phase a successful step leads to, and
_ON_FAILURE which error kind a failed step raises and whether the new key
must be compensated.
"""

import abc
import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import (
    CreationFailedError,
    DeadlineExceededError,
    PersistenceFailedError,
    RetirementFailedError,
    RollbackFailedError,
    ServiceError,
    VerificationFailedError,
    VerificationRejectedError,
    classify_error,
    mask_key_id,
    safe_message,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_ROLLBACK_GRACE = 5.0


@dataclass
class AccessKeyPair:
    """A newly issued access key. The secret is only known at creation time."""

    id: str
    secret: str = field(repr=False)
    owner: str
    created_at: Optional[object] = None

    @classmethod
    def from_response(cls, access_key):
        """Build from the AccessKey dict of an IAM CreateAccessKey response."""
        return cls(
            id=access_key["AccessKeyId"],
            secret=access_key["SecretAccessKey"],
            owner=access_key.get("UserName", ""),
            created_at=access_key.get("CreateDate"),
        )

    def to_secret_payload(self):
        """
        Serialize for the secret vault.

        Other tooling reads this record, so the shape is fixed: a flat object
        with AccessKeyId and SecretAccessKey and nothing else.
        """
        return json.dumps({"AccessKeyId": self.id, "SecretAccessKey": self.secret})


@dataclass
class KeyMetadata:
    """An access key as listed by IAM (no secret)."""

    id: str
    owner: str
    status: str = "Active"
    created_at: Optional[object] = None

    @classmethod
    def from_response(cls, metadata):
        return cls(
            id=metadata["AccessKeyId"],
            owner=metadata.get("UserName", ""),
            status=metadata.get("Status", "Active"),
            created_at=metadata.get("CreateDate"),
        )


class Phase(enum.Enum):
    PENDING = "pending"
    CREATED = "created"
    VERIFIED = "verified"
    PERSISTED = "persisted"
    OLD_RETIRED = "old_retired"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class Step(enum.Enum):
    CREATE = "create"
    VERIFY = "verify"
    PERSIST = "persist"
    RETIRE = "retire"


class RetirementPolicy(enum.Enum):
    """Which listed keys count as "old" once the new key is stored."""

    FIRST_OTHER = "first-other"
    ALL_OTHERS = "all-others"


_NEXT_STEP = {
    Phase.PENDING: Step.CREATE,
    Phase.CREATED: Step.VERIFY,
    Phase.VERIFIED: Step.PERSIST,
    Phase.PERSISTED: Step.RETIRE,
}

_ON_SUCCESS = {
    Step.CREATE: Phase.CREATED,
    Step.VERIFY: Phase.VERIFIED,
    Step.PERSIST: Phase.PERSISTED,
    Step.RETIRE: Phase.OLD_RETIRED,
}

# step -> (error raised, whether the new key has to be deleted)
_ON_FAILURE = {
    Step.CREATE: (CreationFailedError, False),
    Step.VERIFY: (VerificationFailedError, True),
    Step.PERSIST: (PersistenceFailedError, True),
    Step.RETIRE: (RetirementFailedError, False),
}

_OPERATIONS = {
    Step.CREATE: "CreateAccessKey",
    Step.VERIFY: "GetCallerIdentity",
    Step.PERSIST: "PutSecretValue",
    Step.RETIRE: "DeleteAccessKey",
}


@dataclass
class RotationAttempt:
    """State of a single rotate() call. Never shared, never persisted."""

    principal: str
    secret_name: str
    new_key: Optional[AccessKeyPair] = None
    old_key_id: Optional[str] = None
    retired_key_ids: List[str] = field(default_factory=list)
    phase: Phase = Phase.PENDING
    history: List[Phase] = field(default_factory=lambda: [Phase.PENDING])

    def advance(self, phase):
        logger.debug(
            "Rotation for %s: %s -> %s", self.principal, self.phase.value, phase.value
        )
        self.phase = phase
        self.history.append(phase)


@dataclass
class RotationResult:
    principal: str
    secret_name: str
    new_key: AccessKeyPair
    retired_key_ids: List[str]
    phase: Phase
    elapsed: float = 0.0

    @property
    def new_key_id(self):
        return self.new_key.id


class Deadline:
    """
    A point in time after which no further remote call may start.

    Args:
        seconds: Budget from now
        clock: Monotonic clock function (injectable for tests)
    """

    def __init__(self, seconds, clock=time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self):
        return max(0.0, self._expires_at - self._clock())

    def expired(self):
        return self.remaining() <= 0

    def check(self, operation):
        """Raise DeadlineExceededError if the budget is used up."""
        if self.expired():
            raise DeadlineExceededError(
                f"Deadline of {self.seconds:g}s exceeded before {operation}"
            )


class IdentityKeyStore(abc.ABC):
    """
    Access key operations for a named principal.

    Every operation takes an optional Deadline. An implementation must not
    let a call run past it; a call cut off by the deadline raises
    DeadlineExceededError.
    """

    @abc.abstractmethod
    def create_key(self, principal, deadline=None):
        """Create and return a new AccessKeyPair for principal."""

    @abc.abstractmethod
    def verify_key(self, pair, deadline=None):
        """
        Confirm the pair authenticates as its owner.

        Must use a session holding only the pair's credentials, never the
        caller's ambient session. Returns True or False, or raises.
        """

    @abc.abstractmethod
    def list_keys(self, principal, deadline=None):
        """Return the principal's keys as KeyMetadata, in service order."""

    @abc.abstractmethod
    def delete_key(self, principal, key_id, deadline=None):
        """Delete one access key."""


class SecretVault(abc.ABC):
    """Named secret storage, bounded by an optional Deadline like IdentityKeyStore."""

    @abc.abstractmethod
    def put_secret(self, name, payload, deadline=None):
        """Create the secret or overwrite its current value."""


class KeyRotationCoordinator:
    """
    Rotate a principal's access key and store the new one in a vault.

    Args:
        key_store: IdentityKeyStore implementation
        vault: SecretVault implementation
        timeout: Seconds allowed for all remote calls of one rotation
        rollback_grace: Seconds granted to delete the new key after a failure,
            counted from the failure, even when the main deadline has
            already passed. Must be positive
        retirement_policy: RetirementPolicy used when no old key id is given
        clock: Monotonic clock function

    Every remote call is handed the deadline it must finish by. A
    KeyboardInterrupt between creating and storing the new key deletes the
    new key before it propagates.

    Concurrent rotations of the same principal are not safe; callers must
    serialize them.
    """

    def __init__(
        self,
        key_store,
        vault,
        timeout=DEFAULT_TIMEOUT,
        rollback_grace=DEFAULT_ROLLBACK_GRACE,
        retirement_policy=RetirementPolicy.FIRST_OTHER,
        clock=time.monotonic,
    ):
        if rollback_grace <= 0:
            raise ValueError(f"rollback_grace must be positive, got {rollback_grace}")
        self.key_store = key_store
        self.vault = vault
        self.timeout = timeout
        self.rollback_grace = rollback_grace
        self.retirement_policy = retirement_policy
        self._clock = clock

    def rotate(self, principal, secret_name, old_key_id=None, timeout=None):
        """
        Run one rotation.

        Args:
            principal: IAM user name whose key is rotated
            secret_name: Vault entry that receives the new key material
            old_key_id: Key to retire. If None, the retirement policy picks it
            timeout: Overrides the coordinator's timeout for this call

        Returns:
            RotationResult

        Raises:
            CreationFailedError: Nothing changed
            VerificationFailedError, PersistenceFailedError: The new key was
                rolled back, the old key is untouched
            RetirementFailedError: New key live and stored, old key still live
            RollbackFailedError: Old and new key both live, needs an operator
        """
        started = self._clock()
        deadline = Deadline(self.timeout if timeout is None else timeout, clock=self._clock)
        attempt = RotationAttempt(
            principal=principal, secret_name=secret_name, old_key_id=old_key_id
        )
        logger.info("Rotating access key for %s (secret %s)", principal, secret_name)

        while attempt.phase in _NEXT_STEP:
            step = _NEXT_STEP[attempt.phase]
            try:
                deadline.check(_OPERATIONS[step])
                self._run_step(step, attempt, deadline)
            except Exception as exc:
                error = self._handle_failure(step, attempt, exc, started)
                raise error from exc
            except KeyboardInterrupt:
                self._handle_interrupt(step, attempt)
                raise
            attempt.advance(_ON_SUCCESS[step])

        result = self._result(attempt, started)
        logger.info(
            "Rotation for %s complete: new key %s, retired %s",
            principal,
            mask_key_id(result.new_key_id),
            [mask_key_id(k) for k in result.retired_key_ids] or "nothing",
        )
        return result

    def _run_step(self, step, attempt, deadline):
        if step is Step.CREATE:
            attempt.new_key = self.key_store.create_key(attempt.principal, deadline=deadline)
            logger.info("Created access key %s", mask_key_id(attempt.new_key.id))
        elif step is Step.VERIFY:
            if not self.key_store.verify_key(attempt.new_key, deadline=deadline):
                raise VerificationRejectedError(
                    f"New key did not authenticate as {attempt.principal}"
                )
            logger.info("Verified access key %s", mask_key_id(attempt.new_key.id))
        elif step is Step.PERSIST:
            self.vault.put_secret(
                attempt.secret_name, attempt.new_key.to_secret_payload(), deadline=deadline
            )
            logger.info("Stored access key %s in %s", mask_key_id(attempt.new_key.id), attempt.secret_name)
        elif step is Step.RETIRE:
            self._retire(attempt, deadline)

    def _retire(self, attempt, deadline):
        keys = self.key_store.list_keys(attempt.principal, deadline=deadline)
        for key_id in self._select_old_keys(attempt, keys):
            deadline.check(_OPERATIONS[Step.RETIRE])
            self.key_store.delete_key(attempt.principal, key_id, deadline=deadline)
            attempt.retired_key_ids.append(key_id)
            logger.info("Deleted old access key %s", mask_key_id(key_id))

    def _select_old_keys(self, attempt, keys):
        others = [k.id for k in keys if k.id != attempt.new_key.id]

        if attempt.old_key_id is not None:
            if attempt.old_key_id not in others:
                raise ServiceError(
                    f"Old key {mask_key_id(attempt.old_key_id)} is not listed for "
                    f"{attempt.principal}",
                    code="NoSuchEntity",
                    operation="ListAccessKeys",
                )
            return [attempt.old_key_id]

        if not others:
            logger.info("No previous access key to retire for %s", attempt.principal)
            return []

        if self.retirement_policy is RetirementPolicy.ALL_OTHERS:
            attempt.old_key_id = others[0]
            return others

        if len(others) > 1:
            # Listing order is not stable, this may not be the key the caller meant
            logger.warning(
                "%s has %d other keys; retiring the first listed (%s)",
                attempt.principal,
                len(others),
                mask_key_id(others[0]),
            )
        attempt.old_key_id = others[0]
        return [others[0]]

    def _handle_failure(self, step, attempt, exc, started):
        cause = classify_error(exc, operation=_OPERATIONS[step])
        error_class, compensate = _ON_FAILURE[step]
        message = (
            f"Access key {error_class.kind} failed for {attempt.principal}: "
            f"{safe_message(cause)}"
        )

        if error_class is RetirementFailedError:
            logger.warning("%s; new key is live, old key was not retired", message)
            return RetirementFailedError(
                message,
                attempt=attempt,
                cause=cause,
                result=self._result(attempt, started),
            )

        error = error_class(message, attempt=attempt, cause=cause)
        if not compensate:
            logger.error(message)
            return error
        return self._compensate(attempt, error)

    def _handle_interrupt(self, step, attempt):
        """Delete the new key before an interrupt propagates."""
        # The key may exist even if create_key has not returned to rotate() yet
        if step is Step.RETIRE or attempt.new_key is None:
            return
        error_class = _ON_FAILURE[step][0]
        primary = error_class(
            f"Access key {error_class.kind} interrupted for {attempt.principal}",
            attempt=attempt,
        )
        error = self._compensate(attempt, primary)
        if isinstance(error, RollbackFailedError):
            raise error

    def _compensate(self, attempt, primary):
        """Delete the new key. Returns the error rotate() should raise."""
        new_id = attempt.new_key.id
        logger.warning("%s; deleting new key %s", primary, mask_key_id(new_id))
        grace = Deadline(self.rollback_grace, clock=self._clock)
        try:
            self.key_store.delete_key(attempt.principal, new_id, deadline=grace)
        except Exception as exc:
            cause = classify_error(exc, operation="DeleteAccessKey")
            attempt.advance(Phase.ROLLBACK_FAILED)
            logger.critical(
                "Rollback failed, %s now has two live keys (new key %s): %s",
                attempt.principal,
                mask_key_id(new_id),
                safe_message(cause),
            )
            return RollbackFailedError(
                f"{primary}; deleting new key {mask_key_id(new_id)} also failed "
                f"({safe_message(cause)}). Both keys are live, remove one manually.",
                attempt=attempt,
                cause=cause,
                primary=primary,
            )

        attempt.advance(Phase.ROLLED_BACK)
        logger.info("Rolled back new key %s", mask_key_id(new_id))
        return primary

    def _result(self, attempt, started):
        return RotationResult(
            principal=attempt.principal,
            secret_name=attempt.secret_name,
            new_key=attempt.new_key,
            retired_key_ids=list(attempt.retired_key_ids),
            phase=attempt.phase,
            elapsed=self._clock() - started,
        )
