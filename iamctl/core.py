"""
Core AWS session and IAM helper functions for iamctl.
"""

import datetime
import json
import logging
import os
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from .errors import CredentialError, IamctlError, classify_error, mask_key_id
from .rotation import DEFAULT_TIMEOUT, KeyMetadata

logger = logging.getLogger(__name__)

DEFAULT_SECRET_NAME = "iamctl/access-key"
MFA_MAX_AGE_DAYS = 90
MIN_PASSWORD_LENGTH = 14
MIN_ATTEMPT_TIMEOUT = 1.0

ENFORCE_MFA_POLICY_NAME = "EnforceMFA"
KEY_ROTATION_POLICY_NAME = "EnforceKeyRotation"
MFA_AGE_POLICY_NAME = "EnforceMFARotation"


def resolve_profile(profile=None):
    """
    Pick the AWS profile to use.

    Order: explicit argument, AWS_PROFILE environment variable, then None
    (boto3's default credential chain).
    """
    return profile or os.environ.get("AWS_PROFILE") or None


def get_default_timeout():
    """Get the operation timeout in seconds from IAMCTL_TIMEOUT, or the default."""
    value = os.environ.get("IAMCTL_TIMEOUT")
    if not value:
        return DEFAULT_TIMEOUT
    try:
        timeout = float(value)
    except ValueError:
        raise IamctlError(f"IAMCTL_TIMEOUT must be a number of seconds, got '{value}'")
    if timeout <= 0:
        raise IamctlError(f"IAMCTL_TIMEOUT must be positive, got '{value}'")
    return timeout


def get_default_secret_name():
    """Get the Secrets Manager secret name from IAMCTL_SECRET_NAME, or the default."""
    return os.environ.get("IAMCTL_SECRET_NAME") or DEFAULT_SECRET_NAME


def make_client_config(timeout=DEFAULT_TIMEOUT, max_attempts=2):
    """
    Build a botocore Config whose attempts together fit inside timeout.

    The timeout is split into one share per attempt plus one share for the
    retry backoff. Each attempt's share is divided between connecting and
    reading. Budgets under MIN_ATTEMPT_TIMEOUT per attempt get a single
    attempt with the whole budget.

    Args:
        timeout: Seconds the call, including retries, may take
        max_attempts: Total attempts (first try included) when the budget allows

    Returns:
        botocore.config.Config
    """
    if max_attempts > 1 and timeout < (max_attempts + 1) * MIN_ATTEMPT_TIMEOUT:
        max_attempts = 1
    shares = max_attempts + 1 if max_attempts > 1 else 1
    per_attempt = max(0.1, timeout / shares)
    connect_timeout = min(5.0, per_attempt / 2)
    return Config(
        connect_timeout=connect_timeout,
        read_timeout=per_attempt - connect_timeout,
        retries={"total_max_attempts": max_attempts, "mode": "standard"},
    )


def create_session(profile=None, region=None):
    """
    Create a boto3 session for the operator's own credentials.

    Args:
        profile: AWS profile name, or None for the default chain
        region: AWS region, or None for the profile/environment default

    Returns:
        boto3.Session

    Raises:
        CredentialError: If the profile does not exist
    """
    try:
        return boto3.Session(profile_name=resolve_profile(profile), region_name=region)
    except ProfileNotFound as e:
        raise CredentialError(f"AWS profile not found: {e}", original=e)


def create_session_for_key(access_key_id, secret_access_key, region=None):
    """
    Create a boto3 session holding exactly one access key pair.

    Nothing from the environment or the shared credentials file is used for
    authentication, so calls made through it prove the pair itself works.
    """
    return boto3.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        region_name=region,
    )


def aws_call(operation, func, **kwargs):
    """
    Invoke a boto3 client method, classifying any failure.

    Args:
        operation: API operation name, used in error messages
        func: Bound client method
        **kwargs: Request parameters

    Returns:
        The response dict

    Raises:
        CredentialError, PermissionDeniedError, ServiceError
    """
    try:
        return func(**kwargs)
    except (ClientError, BotoCoreError) as e:
        raise classify_error(e, operation=operation) from e


def get_current_user(iam_client):
    """
    Get the IAM user the client's credentials belong to.

    Returns:
        dict: IAM User with UserName, UserId and Arn
    """
    response = aws_call("GetUser", iam_client.get_user)
    return response["User"]


def extract_account_id(arn):
    """
    Extract the AWS account ID from an ARN.

    Examples:
        arn:aws:iam::123456789012:user/alice → 123456789012
        not-an-arn → unknown
    """
    parts = (arn or "").split(":")
    if len(parts) >= 5 and parts[4]:
        return parts[4]
    return "unknown"


def list_access_keys(iam_client, username):
    """
    List a user's access keys in the order IAM returns them.

    Returns:
        list[KeyMetadata]
    """
    keys = []
    try:
        paginator = iam_client.get_paginator("list_access_keys")
        for page in paginator.paginate(UserName=username):
            for metadata in page["AccessKeyMetadata"]:
                keys.append(KeyMetadata.from_response(metadata))
    except (ClientError, BotoCoreError) as e:
        raise classify_error(e, operation="ListAccessKeys") from e
    return keys


def disable_access_key(iam_client, key_id, username=None):
    """
    Mark an access key Inactive. The key can be re-enabled later.

    Args:
        iam_client: boto3 IAM client
        key_id: Access key ID
        username: Key owner; defaults to the caller
    """
    params = {"AccessKeyId": key_id, "Status": "Inactive"}
    if username:
        params["UserName"] = username
    aws_call("UpdateAccessKey", iam_client.update_access_key, **params)
    logger.info("Disabled access key %s", mask_key_id(key_id))


def get_mfa_status(iam_client, username):
    """
    Get the MFA enrollment status of a user.

    Only the first device is considered; IAM users normally have one.

    Returns:
        dict: enabled (bool), status (str), device (str), enrolled (datetime or None)
    """
    response = aws_call("ListMFADevices", iam_client.list_mfa_devices, UserName=username)
    devices = response.get("MFADevices", [])
    if not devices:
        return {"enabled": False, "status": "Disabled", "device": "None", "enrolled": None}

    device = devices[0]
    return {
        "enabled": True,
        "status": "Enabled",
        "device": device["SerialNumber"],
        "enrolled": device.get("EnableDate"),
    }


def mfa_needs_rotation(enrolled, now=None, max_age_days=MFA_MAX_AGE_DAYS):
    """Check whether an MFA device enabled at `enrolled` is past its maximum age."""
    if enrolled is None:
        return False
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    if enrolled.tzinfo is None:
        enrolled = enrolled.replace(tzinfo=datetime.timezone.utc)
    return now - enrolled > datetime.timedelta(days=max_age_days)


def get_identity_status(iam_client):
    """
    Collect status information about the caller's IAM identity.

    Returns:
        dict: user, arn, account_id, mfa ("enabled"/"disabled")
    """
    user = get_current_user(iam_client)
    mfa = get_mfa_status(iam_client, user["UserName"])
    return {
        "user": user["UserName"],
        "arn": user["Arn"],
        "account_id": extract_account_id(user["Arn"]),
        "mfa": "enabled" if mfa["enabled"] else "disabled",
    }


def build_otpauth_uri(username, seed, issuer="AWS"):
    """
    Build an otpauth:// URI for authenticator apps from a Base32 seed.

    Args:
        username: IAM username (label)
        seed: Base32 seed, str or bytes
        issuer: Issuer shown in the authenticator app

    Returns:
        str: otpauth://totp/... URI
    """
    if isinstance(seed, bytes):
        seed = seed.decode("ascii")
    label = quote(f"{issuer}:{username}", safe=":")
    return f"otpauth://totp/{label}?secret={quote(seed)}&issuer={quote(issuer)}"


def create_virtual_mfa_device(iam_client, username, now=None):
    """
    Create a virtual MFA device for a user. It still has to be enabled.

    Returns:
        dict: VirtualMFADevice with SerialNumber and Base32StringSeed
    """
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    device_name = f"iamctl-{username}-{int(now.timestamp())}"
    response = aws_call(
        "CreateVirtualMFADevice",
        iam_client.create_virtual_mfa_device,
        VirtualMFADeviceName=device_name,
    )
    return response["VirtualMFADevice"]


def enable_mfa_device(iam_client, username, serial_number, code1, code2):
    """
    Enable a virtual MFA device with two consecutive TOTP codes.

    If the codes are malformed or enabling fails, the virtual device is
    deleted again so no unusable device is left behind.

    Raises:
        IamctlError: If the codes are malformed or enabling fails
    """
    try:
        for code in (code1, code2):
            if not (code.isdigit() and len(code) == 6):
                raise IamctlError("MFA codes must be 6 digits")
        aws_call(
            "EnableMFADevice",
            iam_client.enable_mfa_device,
            UserName=username,
            SerialNumber=serial_number,
            AuthenticationCode1=code1,
            AuthenticationCode2=code2,
        )
    except IamctlError:
        discard_virtual_mfa_device(iam_client, serial_number)
        raise


def discard_virtual_mfa_device(iam_client, serial_number):
    """
    Delete a virtual MFA device that was never enabled.

    Returns:
        bool: True if deleted, False if the cleanup failed (logged)
    """
    try:
        aws_call(
            "DeleteVirtualMFADevice",
            iam_client.delete_virtual_mfa_device,
            SerialNumber=serial_number,
        )
        return True
    except IamctlError as e:
        logger.warning("Failed to clean up virtual MFA device %s: %s", serial_number, e)
        return False


def disable_mfa_device(iam_client, username):
    """
    Deactivate and delete the user's first MFA device.

    Returns:
        str: Serial number of the removed device

    Raises:
        IamctlError: If the user has no MFA device
    """
    response = aws_call("ListMFADevices", iam_client.list_mfa_devices, UserName=username)
    devices = response.get("MFADevices", [])
    if not devices:
        raise IamctlError(f"No MFA devices found for user '{username}'")

    serial_number = devices[0]["SerialNumber"]
    aws_call(
        "DeactivateMFADevice",
        iam_client.deactivate_mfa_device,
        UserName=username,
        SerialNumber=serial_number,
    )
    aws_call(
        "DeleteVirtualMFADevice",
        iam_client.delete_virtual_mfa_device,
        SerialNumber=serial_number,
    )
    return serial_number


def is_valid_password(password):
    """
    Check password complexity.

    Requires at least 14 characters and at least three of the four character
    classes: lowercase, uppercase, digits, other.
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        return False

    classes = [
        any(c.islower() for c in password),
        any(c.isupper() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


def create_mfa_session(session, serial_number, token_code, region=None, timeout=DEFAULT_TIMEOUT):
    """
    Exchange the session's credentials plus an MFA code for an MFA session.

    Args:
        session: boto3.Session with long-term credentials
        serial_number: MFA device ARN
        token_code: Current 6-digit code

    Returns:
        boto3.Session backed by the temporary MFA credentials
    """
    sts_client = session.client("sts", config=make_client_config(timeout))
    response = aws_call(
        "GetSessionToken",
        sts_client.get_session_token,
        SerialNumber=serial_number,
        TokenCode=token_code,
    )
    credentials = response["Credentials"]
    return boto3.Session(
        aws_access_key_id=credentials["AccessKeyId"],
        aws_secret_access_key=credentials["SecretAccessKey"],
        aws_session_token=credentials["SessionToken"],
        region_name=region or session.region_name,
    )


def reset_password(iam_client, username, password):
    """
    Set a user's console password, creating the login profile if missing.

    Raises:
        IamctlError: If the password fails the complexity check or IAM rejects it
    """
    if not is_valid_password(password):
        raise IamctlError(
            "Password does not meet complexity requirements "
            f"({MIN_PASSWORD_LENGTH}+ chars, 3 of 4 character types)"
        )

    try:
        aws_call(
            "UpdateLoginProfile",
            iam_client.update_login_profile,
            UserName=username,
            Password=password,
        )
    except IamctlError as e:
        if getattr(e, "code", None) != "NoSuchEntity":
            raise
        logger.info("No login profile for %s, creating one", username)
        aws_call(
            "CreateLoginProfile",
            iam_client.create_login_profile,
            UserName=username,
            Password=password,
        )


def generate_enforce_mfa_policy():
    """
    Generate a policy that denies everything without MFA, except what a user
    needs to enroll an MFA device for themselves.

    Returns:
        dict: IAM policy document
    """
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "AllowSelfMFAEnrollment",
                "Effect": "Allow",
                "Action": [
                    "iam:CreateVirtualMFADevice",
                    "iam:EnableMFADevice",
                    "iam:ListMFADevices",
                    "iam:GetUser",
                ],
                "Resource": [
                    "arn:aws:iam::*:mfa/*",
                    "arn:aws:iam::*:user/${aws:username}",
                ],
            },
            {
                "Sid": "DenyAllExceptMFAEnrollmentWithoutMFA",
                "Effect": "Deny",
                "NotAction": [
                    "iam:CreateVirtualMFADevice",
                    "iam:EnableMFADevice",
                    "iam:ListMFADevices",
                    "iam:GetUser",
                    "sts:GetSessionToken",
                ],
                "Resource": "*",
                "Condition": {"BoolIfExists": {"aws:MultiFactorAuthPresent": "false"}},
            },
        ],
    }


def generate_key_rotation_policy():
    """
    Generate a policy that lets every user rotate their own access keys and
    nobody else's.

    Returns:
        dict: IAM policy document
    """
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "ManageOwnAccessKeys",
                "Effect": "Allow",
                "Action": [
                    "iam:CreateAccessKey",
                    "iam:DeleteAccessKey",
                    "iam:UpdateAccessKey",
                    "iam:ListAccessKeys",
                    "iam:GetAccessKeyLastUsed",
                ],
                "Resource": "arn:aws:iam::*:user/${aws:username}",
            },
        ],
    }


def generate_mfa_age_policy(max_age_days=MFA_MAX_AGE_DAYS):
    """
    Generate a policy that denies requests authenticated with MFA longer ago
    than max_age_days.

    Returns:
        dict: IAM policy document
    """
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "DenyStaleMFA",
                "Effect": "Deny",
                "Action": "*",
                "Resource": "*",
                "Condition": {
                    "NumericGreaterThan": {
                        "aws:MultiFactorAuthAge": str(max_age_days * 24 * 3600)
                    }
                },
            },
        ],
    }


def ensure_managed_policy(iam_client, account_id, policy_name, policy_document, description):
    """
    Create a customer managed policy, or reuse it if it already exists.

    Returns:
        str: Policy ARN
    """
    policy_arn = f"arn:aws:iam::{account_id}:policy/{policy_name}"
    try:
        response = aws_call(
            "CreatePolicy",
            iam_client.create_policy,
            PolicyName=policy_name,
            PolicyDocument=json.dumps(policy_document),
            Description=description,
        )
        return response["Policy"]["Arn"]
    except IamctlError as e:
        if getattr(e, "code", None) != "EntityAlreadyExists":
            raise
        logger.info("Policy %s already exists, reusing it", policy_name)
        return policy_arn


def attach_policy_to_all_users(iam_client, policy_arn):
    """
    Attach a managed policy to every IAM user in the account.

    Failures for individual users do not stop the loop.

    Returns:
        tuple: (attached usernames, list of (username, error))
    """
    attached = []
    failed = []
    try:
        paginator = iam_client.get_paginator("list_users")
        pages = list(paginator.paginate())
    except (ClientError, BotoCoreError) as e:
        raise classify_error(e, operation="ListUsers") from e

    for page in pages:
        for user in page["Users"]:
            username = user["UserName"]
            try:
                aws_call(
                    "AttachUserPolicy",
                    iam_client.attach_user_policy,
                    UserName=username,
                    PolicyArn=policy_arn,
                )
                attached.append(username)
            except IamctlError as e:
                logger.warning("Failed to attach %s to %s: %s", policy_arn, username, e)
                failed.append((username, e))
    return attached, failed


def enforce_policies(iam_client, account_id, policies):
    """
    Create each policy and attach it to all users.

    Args:
        iam_client: boto3 IAM client
        account_id: AWS account ID the policies live in
        policies: list of (name, document, description)

    Returns:
        dict: policy name → (attached usernames, failures)
    """
    results = {}
    for name, document, description in policies:
        policy_arn = ensure_managed_policy(iam_client, account_id, name, document, description)
        results[name] = attach_policy_to_all_users(iam_client, policy_arn)
    return results
