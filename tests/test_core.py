"""Tests for iamctl core module."""

import datetime
import json
import os
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError, ProfileNotFound

from iamctl.core import (
    DEFAULT_SECRET_NAME,
    build_otpauth_uri,
    create_session,
    disable_access_key,
    disable_mfa_device,
    enable_mfa_device,
    ensure_managed_policy,
    attach_policy_to_all_users,
    extract_account_id,
    generate_enforce_mfa_policy,
    generate_mfa_age_policy,
    get_default_secret_name,
    get_default_timeout,
    get_identity_status,
    get_mfa_status,
    is_valid_password,
    make_client_config,
    mfa_needs_rotation,
    reset_password,
    resolve_profile,
)
from iamctl.errors import CredentialError, IamctlError, PermissionDeniedError, ServiceError


def client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": "error"}}, operation)


class TestConfiguration(unittest.TestCase):
    """Test profile, timeout and secret name resolution."""

    def test_resolve_profile_prefers_argument(self):
        """Test an explicit profile wins over AWS_PROFILE."""
        with patch.dict(os.environ, {"AWS_PROFILE": "env-profile"}):
            self.assertEqual(resolve_profile("cli-profile"), "cli-profile")
            self.assertEqual(resolve_profile(None), "env-profile")

    def test_resolve_profile_default_chain(self):
        """Test None is returned when nothing is configured."""
        with patch.dict(os.environ, {}, clear=True):
            self.assertIsNone(resolve_profile(None))

    def test_timeout_from_environment(self):
        """Test IAMCTL_TIMEOUT overrides the default timeout."""
        with patch.dict(os.environ, {"IAMCTL_TIMEOUT": "30"}):
            self.assertEqual(get_default_timeout(), 30.0)
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_default_timeout(), 15.0)

    def test_invalid_timeout(self):
        """Test non-numeric and non-positive timeouts are rejected."""
        for value in ("soon", "0", "-3"):
            with patch.dict(os.environ, {"IAMCTL_TIMEOUT": value}):
                with self.assertRaises(IamctlError):
                    get_default_timeout()

    def test_secret_name(self):
        """Test IAMCTL_SECRET_NAME overrides the default secret name."""
        with patch.dict(os.environ, {"IAMCTL_SECRET_NAME": "team/ci"}):
            self.assertEqual(get_default_secret_name(), "team/ci")
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_default_secret_name(), DEFAULT_SECRET_NAME)

    def test_client_config_fits_timeout(self):
        """Test all attempts plus one backoff share fit in the timeout."""
        config = make_client_config(15)
        self.assertEqual(config.retries["total_max_attempts"], 2)
        self.assertAlmostEqual(config.connect_timeout, 2.5)
        self.assertAlmostEqual(config.read_timeout, 2.5)
        attempts = config.retries["total_max_attempts"]
        self.assertLessEqual((config.connect_timeout + config.read_timeout) * (attempts + 1), 15)

    def test_client_config_short_budget(self):
        """Test a small budget gets a single attempt using all of it."""
        short = make_client_config(2)
        self.assertEqual(short.retries["total_max_attempts"], 1)
        self.assertAlmostEqual(short.connect_timeout, 1.0)
        self.assertAlmostEqual(short.read_timeout, 1.0)

    def test_client_config_long_budget_caps_connect(self):
        """Test the connect timeout never exceeds five seconds."""
        config = make_client_config(60)
        self.assertEqual(config.connect_timeout, 5.0)
        self.assertAlmostEqual(config.read_timeout, 15.0)

    @patch("iamctl.core.boto3.Session")
    def test_create_session_unknown_profile(self, mock_session):
        """Test a missing profile is reported as a credential error."""
        mock_session.side_effect = ProfileNotFound(profile="nope")
        with self.assertRaises(CredentialError):
            create_session("nope")

    @patch("iamctl.core.boto3.Session")
    def test_create_session_passes_region(self, mock_session):
        """Test profile and region are handed to boto3."""
        create_session("ops", region="eu-west-1")
        mock_session.assert_called_once_with(profile_name="ops", region_name="eu-west-1")


class TestIdentity(unittest.TestCase):
    """Test identity status helpers."""

    def test_extract_account_id(self):
        """Test account ID parsing from ARNs."""
        self.assertEqual(extract_account_id("arn:aws:iam::123456789012:user/alice"), "123456789012")
        self.assertEqual(extract_account_id("not-an-arn"), "unknown")
        self.assertEqual(extract_account_id(None), "unknown")

    def test_identity_status(self):
        """Test user, ARN, account and MFA status are collected."""
        iam = MagicMock()
        iam.get_user.return_value = {
            "User": {
                "UserName": "alice",
                "UserId": "AIDAEXAMPLE",
                "Arn": "arn:aws:iam::123456789012:user/alice",
            }
        }
        iam.list_mfa_devices.return_value = {"MFADevices": []}

        status = get_identity_status(iam)

        self.assertEqual(
            status,
            {
                "user": "alice",
                "arn": "arn:aws:iam::123456789012:user/alice",
                "account_id": "123456789012",
                "mfa": "disabled",
            },
        )
        iam.list_mfa_devices.assert_called_once_with(UserName="alice")

    def test_identity_status_invalid_token(self):
        """Test an invalid token surfaces as a credential error."""
        iam = MagicMock()
        iam.get_user.side_effect = client_error("InvalidClientTokenId", "GetUser")
        with self.assertRaises(CredentialError):
            get_identity_status(iam)

    def test_disable_access_key(self):
        """Test a key is set Inactive, with and without a user name."""
        iam = MagicMock()
        disable_access_key(iam, "AKIAOLD")
        iam.update_access_key.assert_called_with(AccessKeyId="AKIAOLD", Status="Inactive")

        disable_access_key(iam, "AKIAOLD", username="bob")
        iam.update_access_key.assert_called_with(
            AccessKeyId="AKIAOLD", Status="Inactive", UserName="bob"
        )


class TestMFA(unittest.TestCase):
    """Test MFA helpers."""

    def setUp(self):
        """Set up test fixtures."""
        self.iam = MagicMock()
        self.enabled = datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)

    def test_mfa_status_enabled(self):
        """Test the first device is reported."""
        self.iam.list_mfa_devices.return_value = {
            "MFADevices": [
                {
                    "UserName": "alice",
                    "SerialNumber": "arn:aws:iam::123456789012:mfa/alice",
                    "EnableDate": self.enabled,
                }
            ]
        }
        status = get_mfa_status(self.iam, "alice")
        self.assertTrue(status["enabled"])
        self.assertEqual(status["device"], "arn:aws:iam::123456789012:mfa/alice")
        self.assertEqual(status["enrolled"], self.enabled)

    def test_mfa_status_disabled(self):
        """Test a user without devices."""
        self.iam.list_mfa_devices.return_value = {"MFADevices": []}
        status = get_mfa_status(self.iam, "alice")
        self.assertFalse(status["enabled"])
        self.assertEqual(status["status"], "Disabled")

    def test_mfa_needs_rotation(self):
        """Test the 90 day limit."""
        now = self.enabled + datetime.timedelta(days=91)
        self.assertTrue(mfa_needs_rotation(self.enabled, now=now))
        self.assertFalse(mfa_needs_rotation(self.enabled, now=self.enabled))
        self.assertFalse(mfa_needs_rotation(None))

    def test_otpauth_uri(self):
        """Test the URI authenticator apps understand."""
        uri = build_otpauth_uri("alice smith", b"JBSWY3DPEHPK3PXP")
        self.assertEqual(
            uri, "otpauth://totp/AWS:alice%20smith?secret=JBSWY3DPEHPK3PXP&issuer=AWS"
        )

    def test_enable_mfa_device(self):
        """Test two codes are sent to EnableMFADevice."""
        enable_mfa_device(self.iam, "alice", "arn:mfa", "123456", "654321")
        self.iam.enable_mfa_device.assert_called_once_with(
            UserName="alice",
            SerialNumber="arn:mfa",
            AuthenticationCode1="123456",
            AuthenticationCode2="654321",
        )
        self.iam.delete_virtual_mfa_device.assert_not_called()

    def test_enable_failure_deletes_device(self):
        """Test the virtual device is cleaned up when enabling fails."""
        self.iam.enable_mfa_device.side_effect = client_error(
            "InvalidAuthenticationCode", "EnableMFADevice"
        )
        with self.assertRaises(ServiceError):
            enable_mfa_device(self.iam, "alice", "arn:mfa", "123456", "654321")
        self.iam.delete_virtual_mfa_device.assert_called_once_with(SerialNumber="arn:mfa")

    def test_enable_rejects_malformed_codes(self):
        """Test codes must be six digits and the unused device is deleted."""
        with self.assertRaises(IamctlError):
            enable_mfa_device(self.iam, "alice", "arn:mfa", "12345", "654321")
        self.iam.enable_mfa_device.assert_not_called()
        self.iam.delete_virtual_mfa_device.assert_called_once_with(SerialNumber="arn:mfa")

    def test_disable_mfa_device(self):
        """Test the device is deactivated, then deleted."""
        self.iam.list_mfa_devices.return_value = {"MFADevices": [{"SerialNumber": "arn:mfa"}]}

        serial = disable_mfa_device(self.iam, "alice")

        self.assertEqual(serial, "arn:mfa")
        self.iam.deactivate_mfa_device.assert_called_once_with(
            UserName="alice", SerialNumber="arn:mfa"
        )
        self.iam.delete_virtual_mfa_device.assert_called_once_with(SerialNumber="arn:mfa")

    def test_disable_without_device(self):
        """Test disabling MFA without a device is an error."""
        self.iam.list_mfa_devices.return_value = {"MFADevices": []}
        with self.assertRaises(IamctlError):
            disable_mfa_device(self.iam, "alice")


class TestPassword(unittest.TestCase):
    """Test password complexity and reset."""

    def test_password_complexity(self):
        """Test length and character class requirements."""
        self.assertTrue(is_valid_password("Correct-Horse-42"))
        self.assertTrue(is_valid_password("correcthorse42!"))
        self.assertFalse(is_valid_password("Short-1"))
        self.assertFalse(is_valid_password("alllowercaseletters"))
        self.assertFalse(is_valid_password("lowercaseand12345"))

    def test_reset_updates_login_profile(self):
        """Test an existing login profile is updated."""
        iam = MagicMock()
        reset_password(iam, "alice", "Correct-Horse-42")
        iam.update_login_profile.assert_called_once_with(
            UserName="alice", Password="Correct-Horse-42"
        )
        iam.create_login_profile.assert_not_called()

    def test_reset_creates_missing_login_profile(self):
        """Test a login profile is created on NoSuchEntity."""
        iam = MagicMock()
        iam.update_login_profile.side_effect = client_error("NoSuchEntity", "UpdateLoginProfile")

        reset_password(iam, "alice", "Correct-Horse-42")

        iam.create_login_profile.assert_called_once_with(
            UserName="alice", Password="Correct-Horse-42"
        )

    def test_reset_other_errors_propagate(self):
        """Test errors other than NoSuchEntity are raised."""
        iam = MagicMock()
        iam.update_login_profile.side_effect = client_error("AccessDenied", "UpdateLoginProfile")
        with self.assertRaises(PermissionDeniedError):
            reset_password(iam, "alice", "Correct-Horse-42")

    def test_reset_rejects_weak_password(self):
        """Test weak passwords never reach IAM."""
        iam = MagicMock()
        with self.assertRaises(IamctlError):
            reset_password(iam, "alice", "weak")
        iam.update_login_profile.assert_not_called()


class TestPolicies(unittest.TestCase):
    """Test policy documents and enforcement."""

    def test_policy_documents_are_json(self):
        """Test policy documents serialize and have statements."""
        for document in (generate_enforce_mfa_policy(), generate_mfa_age_policy()):
            self.assertEqual(document["Version"], "2012-10-17")
            self.assertTrue(document["Statement"])
            json.dumps(document)

    def test_mfa_age_in_seconds(self):
        """Test the MFA age condition is expressed in seconds."""
        statement = generate_mfa_age_policy(max_age_days=1)["Statement"][0]
        self.assertEqual(
            statement["Condition"]["NumericGreaterThan"]["aws:MultiFactorAuthAge"], "86400"
        )

    def test_ensure_policy_created(self):
        """Test a new policy returns the ARN from IAM."""
        iam = MagicMock()
        iam.create_policy.return_value = {"Policy": {"Arn": "arn:aws:iam::123:policy/EnforceMFA"}}
        arn = ensure_managed_policy(iam, "123", "EnforceMFA", {"Version": "2012-10-17"}, "d")
        self.assertEqual(arn, "arn:aws:iam::123:policy/EnforceMFA")

    def test_ensure_policy_already_exists(self):
        """Test an existing policy is reused with the account's ARN."""
        iam = MagicMock()
        iam.create_policy.side_effect = client_error("EntityAlreadyExists", "CreatePolicy")
        arn = ensure_managed_policy(iam, "123456789012", "EnforceMFA", {}, "d")
        self.assertEqual(arn, "arn:aws:iam::123456789012:policy/EnforceMFA")

    def test_attach_continues_after_failures(self):
        """Test one failing user does not stop the others."""
        iam = MagicMock()
        iam.get_paginator.return_value.paginate.return_value = [
            {"Users": [{"UserName": "alice"}, {"UserName": "bob"}]},
            {"Users": [{"UserName": "carol"}]},
        ]

        def attach(UserName, PolicyArn):
            if UserName == "bob":
                raise client_error("AccessDenied", "AttachUserPolicy")
            return {}

        iam.attach_user_policy.side_effect = attach

        attached, failed = attach_policy_to_all_users(iam, "arn:policy")

        self.assertEqual(attached, ["alice", "carol"])
        self.assertEqual([name for name, _ in failed], ["bob"])
        self.assertIsInstance(failed[0][1], PermissionDeniedError)


if __name__ == "__main__":
    unittest.main()
