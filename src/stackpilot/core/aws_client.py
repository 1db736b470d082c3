"""Centralized AWS session management keyed by profile and region.

This module provides one shared client bundle per (profile, region)
pair. Each bundle owns a boto3 session, its service clients, the
idempotency token attached to mutating calls and the memoized caller
account id.
"""

import logging
import threading
import uuid
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    ProfileNotFound,
)

from .singleflight import OnceValue, SingleFlight


logger = logging.getLogger(__name__)

THROTTLING_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
})


class SessionError(Exception):
    """Raised when an AWS session cannot be configured."""
    pass


def error_code(error: BaseException) -> str:
    """Return the AWS error code of a ClientError, or an empty string."""
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "") or ""
    return ""


def error_message(error: BaseException) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Message", "") or str(error)
    return str(error)


def is_aws_error(error: BaseException, code: str) -> bool:
    """Check whether an error carries the given AWS error code.

    Args:
        error: Exception raised by a boto3 call
        code: AWS error code, e.g. 'AlreadyExistsException'

    Returns:
        True when the code matches or appears in the error text
    """
    if error is None:
        return False
    if error_code(error) == code:
        return True
    return code in str(error)


def is_throttling_error(error: BaseException) -> bool:
    """Check whether an error means the API is rate limiting us."""
    if error_code(error) in THROTTLING_ERROR_CODES:
        return True
    return isinstance(error, ClientError) and "Rate exceeded" in error_message(error)


def is_stack_missing_error(error: BaseException) -> bool:
    return error_code(error) == "ValidationError" and "does not exist" in error_message(error)


class ClientBundle:
    """AWS clients for one (profile, region) pair.

    Bundles are shared by every caller that asks the SessionCache for the
    same key, so they observe the same idempotency token and account id.
    """

    def __init__(self, session: boto3.Session, profile: str = "",
                 client_config: Optional[Config] = None) -> None:
        """Initialize the bundle.

        Args:
            session: Configured boto3 session
            profile: Profile name the session was built from
            client_config: Optional botocore configuration for the clients

        Raises:
            SessionError: When no region can be resolved for the session
        """
        self.session = session
        self.profile = profile
        self._client_config = client_config
        self._clients: Dict[str, Any] = {}
        self._clients_lock = threading.Lock()
        self._account_id: OnceValue[str] = OnceValue()
        self._token = f"stackpilot-{uuid.uuid4().hex}"

        if not session.region_name:
            raise SessionError(
                f"No AWS region configured for profile '{profile or 'default'}'. "
                "Set a region in the parameter file, configuration or AWS profile."
            )

    @property
    def region(self) -> str:
        return self.session.region_name

    @property
    def token(self) -> str:
        """Idempotency token attached to every mutating call of this bundle."""
        return self._token

    def client(self, service_name: str) -> Any:
        """Get AWS service client for this bundle's region.

        Args:
            service_name: AWS service name (e.g., 'cloudformation', 's3')

        Returns:
            Cached boto3 client for the service
        """
        client = self._clients.get(service_name)
        if client is not None:
            return client
        with self._clients_lock:
            if service_name not in self._clients:
                kwargs: Dict[str, Any] = {"region_name": self.region}
                if self._client_config is not None:
                    kwargs["config"] = self._client_config
                self._clients[service_name] = self.session.client(service_name, **kwargs)
            return self._clients[service_name]

    @property
    def cloudformation(self) -> Any:
        return self.client("cloudformation")

    @property
    def s3(self) -> Any:
        return self.client("s3")

    def account_id(self) -> str:
        """Get the caller's AWS account ID.

        The identity lookup runs at most once per bundle; concurrent first
        callers share the same in-flight request.

        Returns:
            Current AWS account ID

        Raises:
            SessionError: When the identity cannot be resolved
        """
        return self._account_id.get(self._fetch_account_id)

    def _fetch_account_id(self) -> str:
        logger.debug(f"Fetching caller identity for profile '{self.profile}' in {self.region}")
        try:
            response = self.client("sts").get_caller_identity()
        except NoCredentialsError as e:
            raise SessionError(f"AWS credentials are not available: {e}") from e
        except ClientError as e:
            raise SessionError(f"Unable to fetch caller identity: {error_message(e)}") from e
        return response["Account"]

    def describe_stack(self, stack_name: str) -> Optional[Dict[str, Any]]:
        """Describe a stack by name or id.

        Args:
            stack_name: Stack name or ARN

        Returns:
            The stack description, or None when the stack does not exist

        Raises:
            ClientError: When the API call fails for another reason
        """
        try:
            response = self.cloudformation.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if is_stack_missing_error(e):
                return None
            raise
        stacks = response.get("Stacks", [])
        if not stacks:
            return None
        return stacks[0]

    def __repr__(self) -> str:
        return f"ClientBundle(profile={self.profile!r}, region={self.region!r})"


class SessionCache:
    """Memoizes one ClientBundle per (profile, region) pair.

    Construction failures are raised to the caller and not cached, so a
    later call tries again. Concurrent first calls for the same key build
    the session only once.
    """

    def __init__(self, client_config: Optional[Config] = None) -> None:
        """Initialize the cache.

        Args:
            client_config: Optional botocore configuration applied to every client
        """
        self._client_config = client_config
        self._bundles: Dict[Tuple[str, str], ClientBundle] = {}
        self._lock = threading.Lock()
        self._flight = SingleFlight()

    def session(self, profile: Optional[str] = None,
                region: Optional[str] = None) -> ClientBundle:
        """Get the client bundle for a profile and region.

        Args:
            profile: AWS profile name (empty for the default credential chain)
            region: AWS region (empty to use the profile's default region)

        Returns:
            Shared client bundle for the pair

        Raises:
            SessionError: When the profile or region cannot be configured
        """
        key = (profile or "", region or "")
        bundle = self._bundles.get(key)
        if bundle is not None:
            return bundle
        return self._flight.do(key, lambda: self._populate(key))

    def _populate(self, key: Tuple[str, str]) -> ClientBundle:
        bundle = self._bundles.get(key)
        if bundle is not None:
            return bundle
        bundle = self._build(*key)
        with self._lock:
            self._bundles[key] = bundle
        return bundle

    def _build(self, profile: str, region: str) -> ClientBundle:
        logger.debug(f"Creating AWS session for profile '{profile}' region '{region}'")
        kwargs: Dict[str, str] = {}
        if profile:
            kwargs["profile_name"] = profile
        if region:
            kwargs["region_name"] = region
        try:
            session = boto3.Session(**kwargs)
            return ClientBundle(session, profile=profile, client_config=self._client_config)
        except ProfileNotFound as e:
            raise SessionError(f"Unable to make session for profile {profile}: {e}") from e
        except BotoCoreError as e:
            raise SessionError(f"Unable to configure AWS session: {e}") from e
