# src/spark_redshift/common/connections/s3_connection.py

from typing import Any, Dict, List, Optional, Union

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import StagingIOError
from ..models.parameters import Parameters
from ..utils.staging import parse_s3_uri

logger = structlog.get_logger(__name__)

_MISSING_KEY_CODES = ('404', 'NoSuchKey')
_NO_LIFECYCLE_CODE = 'NoSuchLifecycleConfiguration'


class S3ConnectionManager:
    """
    Connection manager for the S3 staging area (AWS S3, MinIO, ...).
    Handles boto3 client creation and the object operations reads and writes need.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize S3 connection manager.

        Args:
            config: Configuration dictionary with connection parameters
        """
        self.config = config
        self.logger = logger.bind(component="S3ConnectionManager")

        self.endpoint_url = config.get('endpoint')
        self.access_key = config.get('access_key')
        self.secret_key = config.get('secret_key')
        self.session_token = config.get('session_token')
        self.region = config.get('region')

        self.client_config = Config(
            retries={'max_attempts': config.get('max_retries', 3)},
            connect_timeout=config.get('connect_timeout', 60),
            read_timeout=config.get('read_timeout', 300)
        )

        self._s3_client = config.get('client')

        self.logger.debug("S3ConnectionManager initialized",
                          endpoint=self.endpoint_url,
                          region=self.region)

    @property
    def s3_client(self):
        """Get or create S3 client."""
        if self._s3_client is None:
            self._s3_client = self._create_s3_client()
        return self._s3_client

    def _create_s3_client(self):
        """Create boto3 S3 client; credentials left unset fall back to the default chain."""
        try:
            client = boto3.client(
                service_name='s3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                aws_session_token=self.session_token,
                region_name=self.region,
                config=self.client_config,
            )
            self.logger.debug("S3 client created")
            return client
        except (BotoCoreError, ClientError) as e:
            self.logger.error("Failed to create S3 client", error=str(e))
            raise StagingIOError(f"Failed to create S3 client: {e}") from e

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def put_file(self, uri: str, data: Union[str, bytes]) -> None:
        """Write an object, replacing any existing one."""
        bucket, key = parse_s3_uri(uri)
        body = data.encode('utf-8') if isinstance(data, str) else data
        try:
            self.s3_client.put_object(Bucket=bucket, Key=key, Body=body)
            self.logger.debug("Object written", bucket=bucket, key=key, size=len(body))
        except (BotoCoreError, ClientError) as e:
            self.logger.error("Failed to write object", bucket=bucket, key=key, error=str(e))
            raise StagingIOError(f"Failed to write {uri}: {e}") from e

    def get_file(self, uri: str) -> str:
        """Read an object as UTF-8 text."""
        bucket, key = parse_s3_uri(uri)
        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
            return response['Body'].read().decode('utf-8')
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in _MISSING_KEY_CODES:
                raise StagingIOError(f"Object not found: {uri}") from e
            self.logger.error("Failed to read object", bucket=bucket, key=key, error=str(e))
            raise StagingIOError(f"Failed to read {uri}: {e}") from e
        except BotoCoreError as e:
            raise StagingIOError(f"Failed to read {uri}: {e}") from e

    def list_children(self, uri: str) -> List[str]:
        """
        List the objects below a directory URI.

        Returns:
            Full URIs of the objects, using the scheme of the given URI
        """
        bucket, prefix = parse_s3_uri(uri)
        if prefix and not prefix.endswith('/'):
            prefix += '/'
        scheme = uri.split('://', 1)[0]
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            children = []
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    children.append(f"{scheme}://{bucket}/{obj['Key']}")
            self.logger.debug("Listed objects", bucket=bucket, prefix=prefix, object_count=len(children))
            return children
        except (BotoCoreError, ClientError) as e:
            self.logger.error("Failed to list objects", bucket=bucket, prefix=prefix, error=str(e))
            raise StagingIOError(f"Failed to list {uri}: {e}") from e

    def delete_recursive(self, uri: str) -> int:
        """Delete every object below a directory URI, returning how many were deleted."""
        children = self.list_children(uri)
        bucket, _ = parse_s3_uri(uri)
        keys = [parse_s3_uri(child)[1] for child in children]
        try:
            # DeleteObjects accepts at most 1000 keys per call
            for start in range(0, len(keys), 1000):
                batch = keys[start:start + 1000]
                self.s3_client.delete_objects(
                    Bucket=bucket,
                    Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True}
                )
        except (BotoCoreError, ClientError) as e:
            raise StagingIOError(f"Failed to delete {uri}: {e}") from e
        self.logger.info("Deleted objects", uri=uri, object_count=len(keys))
        return len(keys)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_lifecycle_rules(self, bucket: str) -> List[Dict[str, Any]]:
        """Lifecycle rules of a bucket; empty when none are configured."""
        try:
            response = self.s3_client.get_bucket_lifecycle_configuration(Bucket=bucket)
            return response.get('Rules', [])
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == _NO_LIFECYCLE_CODE:
                return []
            raise

    def configure_lifecycle_rule(self, bucket: str, prefix: str, expire_after_days: int) -> None:
        """Add (or replace) an expiration rule for a prefix, keeping the bucket's other rules."""
        rule_id = f"spark-redshift-{prefix.strip('/') or 'root'}"
        rules = [r for r in self.get_lifecycle_rules(bucket) if r.get('ID') != rule_id]
        rules.append({
            'ID': rule_id,
            'Filter': {'Prefix': prefix},
            'Status': 'Enabled',
            'Expiration': {'Days': expire_after_days},
        })
        self.s3_client.put_bucket_lifecycle_configuration(
            Bucket=bucket, LifecycleConfiguration={'Rules': rules}
        )
        self.logger.info("Lifecycle rule configured", bucket=bucket, prefix=prefix,
                         expire_after_days=expire_after_days)

    def has_lifecycle_rule(self, uri: str) -> bool:
        """Whether an enabled expiration rule covers the key of the given URI."""
        bucket, key = parse_s3_uri(uri)
        for rule in self.get_lifecycle_rules(bucket):
            if rule.get('Status') != 'Enabled' or 'Expiration' not in rule:
                continue
            rule_filter = rule.get('Filter', {})
            prefix = rule_filter.get('Prefix', rule_filter.get('And', {}).get('Prefix', rule.get('Prefix', '')))
            if key.startswith(prefix or ''):
                return True
        return False

    def check_lifecycle(self, tempdir: str, expire_after_days: Optional[int] = None) -> None:
        """
        Make sure staged files under tempdir will eventually be deleted.

        Staged files are never deleted by reads or writes themselves. Problems
        here are logged and never fail the operation.
        """
        try:
            bucket, prefix = parse_s3_uri(tempdir)
            if expire_after_days is not None:
                self.configure_lifecycle_rule(bucket, prefix, expire_after_days)
            elif not self.has_lifecycle_rule(tempdir):
                self.logger.warning(
                    "The S3 bucket used as tempdir has no lifecycle rule for the staging prefix; "
                    "staged files will accumulate unless they are deleted some other way",
                    bucket=bucket, prefix=prefix)
        except (BotoCoreError, ClientError, StagingIOError) as e:
            self.logger.warning("Could not check the lifecycle configuration of tempdir",
                                tempdir=tempdir, error=str(e))


def create_s3_connection_from_params(params: Parameters) -> S3ConnectionManager:
    """
    Factory function to create S3ConnectionManager from data source parameters.

    Args:
        params: Validated parameters of the read or write

    Returns:
        S3ConnectionManager instance
    """
    return S3ConnectionManager({
        'endpoint': params.s3endpoint,
        'region': params.s3region,
        'access_key': params.aws_access_key_id,
        'secret_key': params.aws_secret_access_key,
        'session_token': params.aws_session_token,
    })
