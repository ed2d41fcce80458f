"""
Command-line interface for iamctl.
"""

import argparse
import getpass
import logging
import sys

from . import __version__
from .backends import IamKeyStore, SecretsManagerVault
from .core import (
    ENFORCE_MFA_POLICY_NAME,
    KEY_ROTATION_POLICY_NAME,
    MFA_AGE_POLICY_NAME,
    MFA_MAX_AGE_DAYS,
    aws_call,
    build_otpauth_uri,
    create_mfa_session,
    create_session,
    create_virtual_mfa_device,
    disable_access_key,
    disable_mfa_device,
    discard_virtual_mfa_device,
    enable_mfa_device,
    enforce_policies,
    generate_enforce_mfa_policy,
    generate_key_rotation_policy,
    generate_mfa_age_policy,
    get_current_user,
    get_default_secret_name,
    get_default_timeout,
    get_identity_status,
    get_mfa_status,
    list_access_keys,
    make_client_config,
    mfa_needs_rotation,
    reset_password,
)
from .errors import (
    IamctlError,
    RetirementFailedError,
    RollbackFailedError,
    RotationError,
    mask_key_id,
    safe_message,
)
from .rotation import DEFAULT_ROLLBACK_GRACE, KeyRotationCoordinator, RetirementPolicy

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_RETIREMENT_WARNING = 2
EXIT_ROLLBACK_FAILED = 3

CATEGORY_HINTS = {
    "credential": "credential error: check your AWS credentials configuration",
    "permission": "permission error: you don't have sufficient permissions to {action}",
    "timeout": "timeout: the operation did not finish in time (see --timeout)",
    "service": "AWS service error: the request to AWS failed",
}


def print_error(error, action):
    """Print a classified, redacted error to stderr."""
    category = getattr(error, "category", "service")
    hint = CATEGORY_HINTS.get(category, CATEGORY_HINTS["service"]).format(action=action)
    print(f"Error: Failed to {action}", file=sys.stderr)
    print(f"  {hint}", file=sys.stderr)
    print(f"Details: {safe_message(error)}", file=sys.stderr)


def iam_client_for(args, session=None):
    """Build an IAM client from the command-line session options."""
    if session is None:
        session = create_session(args.profile, args.region)
    return session.client("iam", config=make_client_config(args.timeout))


def resolve_username(args, iam_client):
    """Use --username if given, otherwise the caller's own IAM user."""
    username = getattr(args, "username", None)
    if username:
        return username
    return get_current_user(iam_client)["UserName"]


def cmd_status(args):
    status = get_identity_status(iam_client_for(args))
    print(f"User: {status['user']}")
    print(f"ARN: {status['arn']}")
    print(f"Account ID: {status['account_id']}")
    print(f"MFA: {status['mfa']}")
    return EXIT_OK


def cmd_keys_rotate(args):
    session = create_session(args.profile, args.region)
    username = resolve_username(args, iam_client_for(args, session))
    policy = RetirementPolicy.ALL_OTHERS if args.retire_all else RetirementPolicy.FIRST_OTHER

    coordinator = KeyRotationCoordinator(
        IamKeyStore(session, timeout=args.timeout),
        SecretsManagerVault(session, timeout=args.timeout),
        timeout=args.timeout,
        rollback_grace=args.rollback_grace,
        retirement_policy=policy,
    )

    try:
        result = coordinator.rotate(username, args.secret_name, old_key_id=args.old_key_id)
    except RetirementFailedError as e:
        new_key_id = e.result.new_key_id if e.result else None
        print(f"⚠ New access key {mask_key_id(new_key_id)} is verified and stored in '{args.secret_name}'")
        print(f"⚠ The old access key could not be deleted: {safe_message(e)}", file=sys.stderr)
        print(
            "  Both keys are live. Deactivate the old one with: "
            f"iamctl keys disable --username {username} --key-id <old-key-id>",
            file=sys.stderr,
        )
        print(
            f"  To delete it, use the AWS Console: IAM → Users → {username} → Security credentials",
            file=sys.stderr,
        )
        return EXIT_RETIREMENT_WARNING
    except RollbackFailedError as e:
        new_key_id = e.attempt.new_key.id if e.attempt and e.attempt.new_key else None
        print("CRITICAL: Key rotation failed and could not be undone", file=sys.stderr)
        print(f"Details: {safe_message(e)}", file=sys.stderr)
        print(file=sys.stderr)
        print(f"User '{username}' now has two live access keys.", file=sys.stderr)
        print(f"The new key {mask_key_id(new_key_id)} was NOT stored and must be removed:", file=sys.stderr)
        print(f"  AWS Console: IAM → Users → {username} → Security credentials", file=sys.stderr)
        return EXIT_ROLLBACK_FAILED
    except RotationError as e:
        print_error(e, "rotate access keys")
        if e.attempt is not None and e.attempt.new_key is not None:
            print("  The new key was removed again; the old key is unchanged", file=sys.stderr)
        return EXIT_FAILURE

    print(f"✓ New access key created and verified: {mask_key_id(result.new_key_id)}")
    print(f"✓ Stored in Secrets Manager as '{result.secret_name}'")
    if result.retired_key_ids:
        for key_id in result.retired_key_ids:
            print(f"✓ Old access key deleted: {mask_key_id(key_id)}")
    else:
        print("ℹ No previous access key to delete")
    print(f"✓ Key rotation complete for '{result.principal}' ({result.elapsed:.1f}s)")
    return EXIT_OK


def cmd_keys_disable(args):
    disable_access_key(iam_client_for(args), args.key_id, username=args.username)
    print(f"✓ Access key {mask_key_id(args.key_id)} disabled")
    return EXIT_OK


def cmd_keys_list(args):
    iam_client = iam_client_for(args)
    username = resolve_username(args, iam_client)
    keys = list_access_keys(iam_client, username)
    if not keys:
        print(f"No access keys for user '{username}'")
        return EXIT_OK
    for key in keys:
        created = key.created_at.isoformat() if hasattr(key.created_at, "isoformat") else "-"
        print(f"{key.id}  {key.status:<8}  {created}")
    return EXIT_OK


def cmd_mfa_status(args):
    iam_client = iam_client_for(args)
    username = get_current_user(iam_client)["UserName"]
    status = get_mfa_status(iam_client, username)

    print(f"User: {username}")
    print(f"MFA Status: {status['status']}")
    if status["enabled"]:
        print(f"MFA Device: {status['device']}")
        enrolled = status["enrolled"]
        if enrolled is not None:
            print(f"Enrolled: {enrolled.strftime('%Y-%m-%d %H:%M:%S %Z')}")
        if mfa_needs_rotation(enrolled):
            print(
                f"Error: MFA device requires rotation (older than {MFA_MAX_AGE_DAYS} days)",
                file=sys.stderr,
            )
            return EXIT_FAILURE
    return EXIT_OK


def cmd_mfa_enable(args):
    iam_client = iam_client_for(args)
    username = get_current_user(iam_client)["UserName"]

    device = create_virtual_mfa_device(iam_client, username)
    serial_number = device["SerialNumber"]
    seed = device["Base32StringSeed"]
    if isinstance(seed, bytes):
        seed = seed.decode("ascii")
    print(f"✓ Virtual MFA device created: {serial_number}")
    print()
    print("Add this account to your authenticator app:")
    print(f"  Secret: {seed}")
    print(f"  URI:    {build_otpauth_uri(username, seed)}")
    print()

    try:
        code1 = getpass.getpass("Enter first MFA code: ").strip()
        code2 = getpass.getpass("Enter next MFA code: ").strip()
    except (EOFError, KeyboardInterrupt):
        print()
        discard_virtual_mfa_device(iam_client, serial_number)
        print("Operation cancelled", file=sys.stderr)
        return EXIT_FAILURE

    enable_mfa_device(iam_client, username, serial_number, code1, code2)
    print(f"✓ MFA enabled for user '{username}'")
    return EXIT_OK


def cmd_mfa_disable(args):
    iam_client = iam_client_for(args)
    username = get_current_user(iam_client)["UserName"]

    confirmation = input("Are you sure you want to disable MFA? Type 'YES' to confirm: ")
    if confirmation.strip() != "YES":
        print("Operation cancelled", file=sys.stderr)
        return EXIT_FAILURE

    serial_number = disable_mfa_device(iam_client, username)
    print(f"✓ MFA device {serial_number} disabled and deleted")
    return EXIT_OK


def read_new_password():
    """Prompt twice for a new password. Returns None if they differ."""
    password = getpass.getpass("Enter new password: ")
    confirm = getpass.getpass("Confirm new password: ")
    if password != confirm:
        return None
    return password


def cmd_password_reset(args):
    session = create_session(args.profile, args.region)
    username = resolve_username(args, iam_client_for(args, session))

    # MFA is checked before the new password is even asked for
    if args.mfa_serial:
        token = getpass.getpass("Enter MFA token: ").strip()
        session = create_mfa_session(
            session, args.mfa_serial, token, region=args.region, timeout=args.timeout
        )

    password = read_new_password()
    if password is None:
        print("Error: Passwords do not match", file=sys.stderr)
        return EXIT_FAILURE

    try:
        reset_password(iam_client_for(args, session), username, password)
    finally:
        del password

    print(f"✓ Password reset complete for user '{username}'")
    return EXIT_OK


def _run_enforcement(args, policies):
    session = create_session(args.profile, args.region)
    sts_client = session.client("sts", config=make_client_config(args.timeout))
    account_id = aws_call("GetCallerIdentity", sts_client.get_caller_identity)["Account"]

    results = enforce_policies(iam_client_for(args, session), account_id, policies)
    for name, (attached, failed) in results.items():
        print(f"✓ Policy '{name}' attached to {len(attached)} user(s)")
        for username, error in failed:
            print(
                f"Warning: Failed to attach '{name}' to user {username}: {safe_message(error)}",
                file=sys.stderr,
            )
    return EXIT_OK


def cmd_enforce_mfa(args):
    return _run_enforcement(
        args,
        [
            (
                ENFORCE_MFA_POLICY_NAME,
                generate_enforce_mfa_policy(),
                "Deny all actions except MFA enrollment unless signed in with MFA",
            )
        ],
    )


def cmd_enforce_policy(args):
    return _run_enforcement(
        args,
        [
            (
                KEY_ROTATION_POLICY_NAME,
                generate_key_rotation_policy(),
                "Allow users to rotate their own access keys only",
            ),
            (
                MFA_AGE_POLICY_NAME,
                generate_mfa_age_policy(),
                f"Deny requests with MFA authentication older than {MFA_MAX_AGE_DAYS} days",
            ),
        ],
    )


def build_parser():
    """Build the argument parser with all subcommands."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--profile",
        "-p",
        default=None,
        help="AWS profile to use (defaults to AWS_PROFILE, then the default credential chain)",
    )
    common.add_argument(
        "--region",
        default=None,
        help="AWS region (defaults to AWS_REGION / the profile's region)",
    )
    common.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds allowed for all AWS calls of the command (default: IAMCTL_TIMEOUT or 15)",
    )
    common.add_argument(
        "--verbose", "-v", action="store_true", help="Log each step to stderr"
    )

    parser = argparse.ArgumentParser(
        prog="iamctl",
        description="Manage AWS IAM credentials: rotate access keys, change passwords, manage MFA",
        epilog="Examples:\n"
        "  iamctl status                                  # Show current IAM identity\n"
        "  iamctl keys rotate                             # Rotate your access key\n"
        "  iamctl keys rotate --secret-name team/ci-key   # Store the new key under another secret\n"
        "  iamctl keys disable --key-id AKIA...           # Deactivate a key\n"
        "  iamctl mfa status                              # Show MFA enrollment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    status = commands.add_parser(
        "status", parents=[common], help="Show current IAM identity information"
    )
    status.set_defaults(func=cmd_status, action="get user information")

    # keys
    keys = commands.add_parser("keys", help="Manage IAM access keys")
    keys_commands = keys.add_subparsers(dest="keys_command", metavar="COMMAND")
    keys_commands.required = True

    rotate = keys_commands.add_parser(
        "rotate",
        parents=[common],
        help="Create a new key, test it, store it in Secrets Manager, delete the old key",
    )
    rotate.add_argument(
        "--secret-name",
        default=None,
        help="Secrets Manager secret receiving the new key "
        "(default: IAMCTL_SECRET_NAME or iamctl/access-key)",
    )
    rotate.add_argument(
        "--username", default=None, help="IAM user to rotate (defaults to current user)"
    )
    rotate.add_argument(
        "--old-key-id",
        default=None,
        help="Access key to delete after rotation. Without it the first other listed key is deleted",
    )
    rotate.add_argument(
        "--retire-all",
        action="store_true",
        help="Delete every other access key of the user, not just the first one",
    )
    rotate.add_argument(
        "--rollback-grace",
        type=float,
        default=DEFAULT_ROLLBACK_GRACE,
        help="Seconds allowed to delete the new key after a failure, must be positive (default: 5)",
    )
    rotate.set_defaults(func=cmd_keys_rotate, action="rotate access keys")

    disable = keys_commands.add_parser(
        "disable", parents=[common], help="Disable an IAM access key"
    )
    disable.add_argument("--key-id", required=True, help="ID of the access key to disable")
    disable.add_argument(
        "--username", default=None, help="Owner of the key (defaults to current user)"
    )
    disable.set_defaults(func=cmd_keys_disable, action="disable the access key")

    list_keys = keys_commands.add_parser(
        "list", parents=[common], help="List a user's access keys"
    )
    list_keys.add_argument(
        "--username", default=None, help="IAM user (defaults to current user)"
    )
    list_keys.set_defaults(func=cmd_keys_list, action="list access keys")

    # password
    password = commands.add_parser("password", help="Manage IAM user passwords")
    password_commands = password.add_subparsers(dest="password_command", metavar="COMMAND")
    password_commands.required = True

    reset = password_commands.add_parser(
        "reset", parents=[common], help="Reset an IAM user's console password"
    )
    reset.add_argument(
        "--username", default=None, help="User to reset (defaults to current user)"
    )
    reset.add_argument(
        "--mfa-serial", default=None, help="MFA device serial number (ARN) to authenticate with"
    )
    reset.set_defaults(func=cmd_password_reset, action="reset the password")

    # mfa
    mfa = commands.add_parser("mfa", help="Manage MFA devices")
    mfa_commands = mfa.add_subparsers(dest="mfa_command", metavar="COMMAND")
    mfa_commands.required = True

    mfa_enable = mfa_commands.add_parser(
        "enable", parents=[common], help="Create and enable a virtual MFA device"
    )
    mfa_enable.set_defaults(func=cmd_mfa_enable, action="enable MFA")
    mfa_disable = mfa_commands.add_parser(
        "disable", parents=[common], help="Deactivate and delete your MFA device"
    )
    mfa_disable.set_defaults(func=cmd_mfa_disable, action="disable MFA")
    mfa_status = mfa_commands.add_parser(
        "status", parents=[common], help="Show MFA enrollment status"
    )
    mfa_status.set_defaults(func=cmd_mfa_status, action="get MFA status")

    # enforce
    enforce = commands.add_parser("enforce", help="Enforce account-wide security policies")
    enforce_commands = enforce.add_subparsers(dest="enforce_command", metavar="COMMAND")
    enforce_commands.required = True

    enforce_mfa = enforce_commands.add_parser(
        "mfa", parents=[common], help="Require MFA for all users"
    )
    enforce_mfa.set_defaults(func=cmd_enforce_mfa, action="enforce MFA")
    enforce_policy = enforce_commands.add_parser(
        "policy", parents=[common], help="Apply key self-rotation and MFA age policies to all users"
    )
    enforce_policy.set_defaults(func=cmd_enforce_policy, action="apply security policies")

    return parser


def configure_logging(verbose):
    """Log iamctl's own steps only; botocore debug output can contain secrets."""
    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", level=logging.WARNING)
    logging.getLogger("iamctl").setLevel(logging.DEBUG if verbose else logging.WARNING)


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        if args.timeout is None:
            args.timeout = get_default_timeout()
        elif args.timeout <= 0:
            parser.error("--timeout must be positive")
        if getattr(args, "rollback_grace", 1) <= 0:
            parser.error("--rollback-grace must be positive")
        if getattr(args, "secret_name", "unset") is None:
            args.secret_name = get_default_secret_name()
        return args.func(args)
    except IamctlError as e:
        print_error(e, args.action)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
