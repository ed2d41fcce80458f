"""
boto3-backed implementations of the rotation collaborators.

IamKeyStore talks to IAM (and STS, to verify a new key), SecretsManagerVault
to AWS Secrets Manager. Every failure leaves these classes already classified
as CredentialError, PermissionDeniedError, ServiceError or, when a call runs
out of time, DeadlineExceededError.

Calls made with a deadline get a client whose connect/read timeouts and
retry count fit into the time the deadline has left.
"""

import logging
import time

from .core import (
    MIN_ATTEMPT_TIMEOUT,
    aws_call,
    create_session_for_key,
    list_access_keys,
    make_client_config,
)
from .errors import CredentialError, ServiceError, mask_key_id
from .rotation import DEFAULT_TIMEOUT, AccessKeyPair, IdentityKeyStore, SecretVault

logger = logging.getLogger(__name__)


def arn_username(arn):
    """
    Get the user name from an IAM user ARN, or None for other identities.

    Examples:
        arn:aws:iam::123456789012:user/alice → alice
        arn:aws:iam::123456789012:user/division/alice → alice
        arn:aws:sts::123456789012:assumed-role/admin/session → None
    """
    if ":user/" not in arn:
        return None
    return arn.split(":user/", 1)[1].split("/")[-1]


def client_config_for(deadline, default):
    """Client config bounded by what is left of deadline, or default without one."""
    if deadline is None:
        return default
    return make_client_config(deadline.remaining())


class IamKeyStore(IdentityKeyStore):
    """
    Access keys of IAM users.

    Args:
        session: boto3.Session of the operator performing the rotation
        timeout: Timeout for calls made without a deadline
        verify_attempts: How often to try a new key before giving up
        verify_delay: Initial wait between verification attempts, grows 1.5x
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        session,
        timeout=DEFAULT_TIMEOUT,
        verify_attempts=5,
        verify_delay=2.0,
        sleep=time.sleep,
    ):
        self.session = session
        self.client_config = make_client_config(timeout)
        self.verify_attempts = verify_attempts
        self.verify_delay = verify_delay
        self._sleep = sleep

    def _iam(self, deadline):
        return self.session.client("iam", config=client_config_for(deadline, self.client_config))

    def create_key(self, principal, deadline=None):
        response = aws_call(
            "CreateAccessKey", self._iam(deadline).create_access_key, UserName=principal
        )
        pair = AccessKeyPair.from_response(response["AccessKey"])
        if not pair.owner:
            pair.owner = principal
        return pair

    def verify_key(self, pair, deadline=None):
        """
        Call STS GetCallerIdentity with nothing but the new key.

        A freshly created key is not usable everywhere at once, so
        InvalidClientTokenId and similar credential errors are retried with
        backoff as long as attempts and the deadline allow.

        Returns:
            bool: True if the key authenticates as its owner
        """
        key_session = create_session_for_key(
            pair.id, pair.secret, region=self.session.region_name
        )

        delay = self.verify_delay
        for attempt in range(1, self.verify_attempts + 1):
            sts_client = key_session.client(
                "sts", config=client_config_for(deadline, self.client_config)
            )
            try:
                identity = aws_call("GetCallerIdentity", sts_client.get_caller_identity)
            except CredentialError:
                if attempt == self.verify_attempts or not self._can_wait(deadline, delay):
                    raise
                logger.info(
                    "Waiting %.1fs for key %s to propagate (attempt %d/%d)",
                    delay,
                    mask_key_id(pair.id),
                    attempt,
                    self.verify_attempts,
                )
                self._sleep(delay)
                delay *= 1.5
                continue

            username = arn_username(identity.get("Arn", ""))
            if username != pair.owner:
                logger.warning(
                    "Key %s authenticated as %s, expected user %s",
                    mask_key_id(pair.id),
                    identity.get("Arn"),
                    pair.owner,
                )
                return False
            return True
        return False

    def list_keys(self, principal, deadline=None):
        return list_access_keys(self._iam(deadline), principal)

    def delete_key(self, principal, key_id, deadline=None):
        aws_call(
            "DeleteAccessKey",
            self._iam(deadline).delete_access_key,
            UserName=principal,
            AccessKeyId=key_id,
        )

    @staticmethod
    def _can_wait(deadline, delay):
        # Leave room for one more attempt after the sleep
        return deadline is None or deadline.remaining() > delay + MIN_ATTEMPT_TIMEOUT


class SecretsManagerVault(SecretVault):
    """
    Secrets in AWS Secrets Manager.

    put_secret creates the secret on first use and stores a new current
    value afterwards. Older versions are left to Secrets Manager's own
    version staging.
    """

    def __init__(self, session, timeout=DEFAULT_TIMEOUT):
        self.session = session
        self.client_config = make_client_config(timeout)

    def _secretsmanager(self, deadline):
        return self.session.client(
            "secretsmanager", config=client_config_for(deadline, self.client_config)
        )

    def put_secret(self, name, payload, deadline=None):
        try:
            aws_call(
                "CreateSecret",
                self._secretsmanager(deadline).create_secret,
                Name=name,
                SecretString=payload,
            )
            logger.info("Created secret %s", name)
        except ServiceError as e:
            if e.code != "ResourceExistsException":
                raise
            if deadline is not None:
                deadline.check("PutSecretValue")
            aws_call(
                "PutSecretValue",
                self._secretsmanager(deadline).put_secret_value,
                SecretId=name,
                SecretString=payload,
            )
            logger.info("Updated secret %s", name)
