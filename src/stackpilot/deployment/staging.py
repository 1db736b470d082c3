"""Staging of oversized template bodies in S3.

CloudFormation rejects inline template bodies above 51,200 bytes. Larger
templates are uploaded to a staging bucket and the changeset request is
rewritten to reference the object URL instead.
"""

import logging
import re
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from ..core.aws_client import ClientBundle, error_message, is_aws_error
from ..core.cancellation import CancelScope
from ..core.cleanup import CleanupRegistry
from .models import ChangesetRequest


logger = logging.getLogger(__name__)

# The API limit is 51200 bytes; stay a little below it
TEMPLATE_BODY_LIMIT = 51100


class StagingError(Exception):
    """Raised when a template cannot be staged in S3."""
    pass


def sanitize_bucket_name(name: str) -> str:
    """Coerce a string into a valid S3 bucket name.

    Args:
        name: Candidate bucket name

    Returns:
        Lowercase name restricted to [a-z0-9.-] without invalid sequences
    """
    name = re.sub(r"[^a-z0-9.-]", "-", name.lower())
    if len(name) < 3:
        name = "aaa"
    if name[0] in "-.":
        name = "a" + name
    name = name.rstrip("-")
    while True:
        collapsed = name.replace("..", ".").replace(".-", "-").replace("-.", "-")
        if collapsed == name:
            break
        name = collapsed
    return name[:63]


def template_size(body: str) -> int:
    return len(body.encode("utf-8"))


class TemplateStager:
    """Uploads large template bodies and registers their removal."""

    def __init__(self, bundle: ClientBundle, cleanup: CleanupRegistry,
                 limit: int = TEMPLATE_BODY_LIMIT) -> None:
        self.bundle = bundle
        self.cleanup = cleanup
        self.limit = limit

    def stage(self, request: ChangesetRequest, scope: CancelScope) -> ChangesetRequest:
        """Move an oversized template body into S3.

        Args:
            request: Changeset request, modified in place when staged
            scope: Cancellation scope for the upload

        Returns:
            The same request, referencing a TemplateURL if it was staged

        Raises:
            StagingError: When the bucket or object cannot be written
        """
        if request.template_body is None or request.template_url:
            return request
        size = template_size(request.template_body)
        if size < self.limit:
            return request

        logger.info(f"Template body too large ({size} bytes): staging it in S3")
        scope.raise_if_cancelled()
        bucket = request.bucket
        if not bucket:
            bucket = self._default_bucket()
            self._ensure_bucket(bucket)

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        key = f"stackpilot/{request.stack_name}/{timestamp}.template"
        try:
            self.bundle.s3.put_object(
                Bucket=bucket, Key=key, Body=request.template_body.encode("utf-8")
            )
        except ClientError as e:
            raise StagingError(
                f"Unable to upload template to bucket {bucket}: {error_message(e)}"
            ) from e

        url = f"https://{bucket}.s3.{self.bundle.region}.amazonaws.com/{key}"
        logger.info(f"Template body uploaded to {url}")
        request.template_body = None
        request.template_url = url
        self.cleanup.register(self._delete_object_job(bucket, key))
        return request

    def _default_bucket(self) -> str:
        name = sanitize_bucket_name(
            f"stackpilot-{self.bundle.account_id()}-{self.bundle.region}"
        )
        logger.info(f"No staging bucket set: using bucket {name}")
        return name

    def _ensure_bucket(self, bucket: str) -> None:
        params = {"Bucket": bucket}
        # us-east-1 rejects an explicit location constraint
        if self.bundle.region != "us-east-1":
            params["CreateBucketConfiguration"] = {
                "LocationConstraint": self.bundle.region
            }
        try:
            response = self.bundle.s3.create_bucket(**params)
            logger.info(f"Bucket created at {response.get('Location', bucket)}")
        except ClientError as e:
            if not is_aws_error(e, "BucketAlreadyOwnedByYou"):
                raise StagingError(
                    f"Unable to create bucket {bucket}: {error_message(e)}"
                ) from e
            logger.debug(f"Bucket {bucket} already owned by you")

    def _delete_object_job(self, bucket: str, key: str):
        def delete_staged_template(scope: CancelScope) -> None:
            logger.debug(f"Cleaning up s3://{bucket}/{key}")
            scope.raise_if_cancelled()
            try:
                self.bundle.s3.delete_object(Bucket=bucket, Key=key)
            except ClientError as e:
                raise StagingError(
                    f"Unable to delete bucket={bucket} key={key}: {error_message(e)}"
                ) from e
        return delete_staged_template

