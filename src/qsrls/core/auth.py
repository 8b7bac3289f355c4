"""Authentication helpers for AWS.

This module centralizes creation of the boto3 Session used by every adapter
and resolution of the account id, turning credential problems into a single
user-friendly AuthError.
"""

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    ProfileNotFound,
    SSOTokenLoadError,
    TokenRetrievalError,
)


class AuthError(RuntimeError):
    """Raised when AWS authentication fails."""


def _format_auth_error(exc: Exception, profile: str | None) -> str:
    """Return a user-friendly auth error message."""
    if isinstance(exc, (SSOTokenLoadError, TokenRetrievalError)):
        cmd = "aws sso login"
        if profile:
            cmd = f"{cmd} --profile {profile}"
        return (
            "AWS authentication failed. Your SSO session has expired.\n"
            f"Re-authenticate with:\n  $ {cmd}"
        )
    if isinstance(exc, NoCredentialsError):
        return "AWS authentication failed: no credentials found (set AWS_PROFILE or use --profile)."
    return f"AWS authentication failed: {exc}"


def get_session(profile: str | None = None) -> boto3.session.Session:
    """
    Create and return a boto3 Session.

    If a profile is provided it is resolved from the shared AWS config files;
    otherwise the default credential chain is used.
    """
    try:
        return boto3.session.Session(profile_name=profile) if profile else boto3.session.Session()
    except ProfileNotFound as exc:
        raise AuthError(f"AWS profile '{profile}' not found.") from exc


def resolve_account_id(session: boto3.session.Session, profile: str | None = None) -> str:
    """Return the account id of the session's caller identity."""
    try:
        return session.client("sts").get_caller_identity()["Account"]
    except (BotoCoreError, ClientError) as exc:
        raise AuthError(_format_auth_error(exc, profile)) from exc
