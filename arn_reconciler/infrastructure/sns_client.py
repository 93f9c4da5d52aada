"""
AWS adapters: SNS platform-endpoint calls and STS grant brokers.

Every botocore failure is translated into the reconciler's RemoteError
hierarchy so the retry controller never sees a provider-specific exception.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from arn_reconciler.config import Settings, get_settings
from arn_reconciler.domain.errors import (
    AuthExpiredError,
    EndpointNotFoundError,
    GrantAcquisitionError,
    InvalidEndpointError,
    RemoteCallError,
    RemoteError,
)
from arn_reconciler.domain.models import EndpointAttributes, Grant
from arn_reconciler.utils.logging import get_logger

log = get_logger(__name__)

NOT_FOUND_CODES = frozenset({"NotFound", "NotFoundException", "ResourceNotFoundException"})
INVALID_CODES = frozenset({"InvalidParameter", "InvalidParameterValue", "ValidationError"})
AUTH_CODES = frozenset(
    {"ExpiredToken", "ExpiredTokenException", "RequestExpired", "TokenRefreshRequired"}
)
_EXPIRED_MESSAGE = "security token included in the request is expired"


def translate_error(exc: Exception) -> RemoteError:
    """Map a botocore exception onto the RemoteError hierarchy."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message") or str(exc)
        if code in NOT_FOUND_CODES:
            return EndpointNotFoundError(message, code=code)
        if code in INVALID_CODES:
            return InvalidEndpointError(message, code=code)
        if code in AUTH_CODES or _EXPIRED_MESSAGE in message.lower():
            return AuthExpiredError(message, code=code)
        return RemoteCallError(message, code=code)
    return RemoteCallError(str(exc), code=type(exc).__name__)


def validate_arn(arn: str) -> None:
    """
    Reject obviously malformed endpoint ARNs before spending a remote call.
    """
    if not arn or ":endpoint/" not in arn or len(arn.split(":")) < 6:
        raise InvalidEndpointError(f"Invalid ARN format: {arn}", code="InvalidArnFormat")


class SnsEndpointClient:
    """
    Thin wrapper around the SNS client bound to the current grant.

    A boto3 client is built per grant generation and shared by all workers; boto3
    clients are thread-safe, sessions are not, so creation happens under a lock.
    """

    def __init__(self, region: str, session: Optional[boto3.session.Session] = None) -> None:
        self.region = region
        self._session = session
        self._lock = threading.Lock()
        self._client: Any = None
        self._generation: Optional[int] = None

    def _client_for(self, grant: Grant) -> Any:
        with self._lock:
            if self._client is None or self._generation != grant.generation:
                if grant.material:
                    session = boto3.session.Session(
                        aws_access_key_id=grant.material.get("access_key_id"),
                        aws_secret_access_key=grant.material.get("secret_access_key"),
                        aws_session_token=grant.material.get("session_token"),
                        region_name=self.region,
                    )
                else:
                    session = self._session or boto3.session.Session(region_name=self.region)
                self._client = session.client("sns", region_name=self.region)
                self._generation = grant.generation
            return self._client

    def check_status(self, arn: str, grant: Grant) -> Optional[EndpointAttributes]:
        """
        Fetch endpoint attributes; None when the service returns no attributes.
        """
        validate_arn(arn)
        client = self._client_for(grant)
        try:
            response = client.get_endpoint_attributes(EndpointArn=arn)
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc) from exc
        attributes = response.get("Attributes")
        if not attributes:
            return None
        return EndpointAttributes.from_sns(attributes)

    def delete_endpoint(self, arn: str, grant: Grant) -> None:
        validate_arn(arn)
        client = self._client_for(grant)
        try:
            client.delete_endpoint(EndpointArn=arn)
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc) from exc


def build_session(settings: Optional[Settings] = None) -> boto3.session.Session:
    """Base session from a named profile, static keys, or the default chain."""
    settings = settings or get_settings()
    kwargs: Dict[str, Any] = {"region_name": settings.aws_region}
    if settings.aws_profile:
        kwargs["profile_name"] = settings.aws_profile
    elif settings.aws_access_key_id and settings.aws_secret_access_key:
        kwargs["aws_access_key_id"] = settings.aws_access_key_id
        kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    return boto3.session.Session(**kwargs)


class StsGrantBroker:
    """
    Issues short-lived grants via STS AssumeRole.
    """

    def __init__(
        self,
        session: boto3.session.Session,
        role_arn: str,
        session_name: str = "sns-cleanup-session",
        duration_seconds: int = 3600,
    ) -> None:
        self._sts = session.client("sts")
        self.role_arn = role_arn
        self.session_name = session_name
        self.duration_seconds = duration_seconds

    def acquire(self) -> Grant:
        try:
            response = self._sts.assume_role(
                RoleArn=self.role_arn,
                RoleSessionName=self.session_name,
                DurationSeconds=self.duration_seconds,
            )
        except (ClientError, BotoCoreError) as exc:
            raise GrantAcquisitionError(f"AssumeRole failed for {self.role_arn}: {exc}") from exc

        credentials = response["Credentials"]
        expiration: datetime = credentials["Expiration"]
        log.info(
            "Assumed role",
            extra={"role_arn": self.role_arn, "expires_at": expiration.isoformat()},
        )
        return Grant(
            material={
                "access_key_id": credentials["AccessKeyId"],
                "secret_access_key": credentials["SecretAccessKey"],
                "session_token": credentials["SessionToken"],
            },
            expires_at=expiration,
        )


class BaseCredentialsBroker:
    """
    Uses the base session's own credentials.

    Grants carry no material (the SNS client falls back to the session) and no
    expiry; botocore refreshes the session's own credentials when they rotate.
    """

    def __init__(self, session: boto3.session.Session) -> None:
        self._session = session

    def acquire(self) -> Grant:
        if self._session.get_credentials() is None:
            raise GrantAcquisitionError("No AWS credentials found in the environment")
        return Grant()


def build_broker(settings: Optional[Settings] = None, session: Optional[boto3.session.Session] = None):
    settings = settings or get_settings()
    session = session or build_session(settings)
    if settings.aws_role_arn:
        return StsGrantBroker(
            session,
            role_arn=settings.aws_role_arn,
            session_name=settings.aws_role_session_name,
            duration_seconds=settings.aws_grant_duration_seconds,
        )
    return BaseCredentialsBroker(session)


__all__ = [
    "BaseCredentialsBroker",
    "SnsEndpointClient",
    "StsGrantBroker",
    "build_broker",
    "build_session",
    "translate_error",
    "validate_arn",
]
