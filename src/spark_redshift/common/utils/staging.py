"""
Staging paths in S3 and the manifests that list staged files.
"""

import json
import uuid
from typing import Dict, List, Sequence, Tuple
from urllib.parse import urlparse

from ..exceptions import StagingIOError

MANIFEST_NAME = "manifest.json"
UNLOAD_MANIFEST_NAME = "manifest"


def allocate_staging_path(tempdir: str) -> str:
    """
    Allocate a fresh directory under the staging root.

    Every read and write gets its own path, so staged files are never shared
    or reused between operations.
    """
    root = tempdir if tempdir.endswith("/") else tempdir + "/"
    return f"{root}{uuid.uuid4()}/"


def fix_s3_url(url: str) -> str:
    """Rewrite s3a:// and s3n:// URLs to the s3:// form Redshift expects."""
    parsed = urlparse(url)
    if parsed.scheme.lower() in ("s3a", "s3n"):
        return "s3://" + url.split("://", 1)[1]
    return url


def to_engine_uri(url: str, tempdir: str) -> str:
    """Rewrite an s3:// URL produced by Redshift to the scheme of the staging root."""
    scheme = urlparse(tempdir).scheme
    if url.startswith("s3://") and scheme and scheme != "s3":
        return f"{scheme}://" + url[len("s3://"):]
    return url


def parse_s3_uri(uri: str) -> Tuple[str, str]:
    """Split an s3/s3a/s3n URI into (bucket, key)."""
    parsed = urlparse(uri)
    if not parsed.netloc:
        raise StagingIOError(f"URI {uri!r} does not name a bucket")
    return parsed.netloc, parsed.path.lstrip("/")


def manifest_uri(staging_path: str) -> str:
    return staging_path.rstrip("/") + "/" + MANIFEST_NAME


def build_manifest(file_uris: Sequence[str]) -> str:
    """Build a COPY manifest listing every staged file as mandatory."""
    entries = [{"url": fix_s3_url(uri), "mandatory": True} for uri in file_uris]
    return json.dumps({"entries": entries})


def parse_manifest(content: str) -> List[str]:
    """
    Read the file URLs out of an UNLOAD or COPY manifest.

    Raises:
        StagingIOError: If the manifest is not valid JSON with an entries list
    """
    try:
        document: Dict = json.loads(content)
        return [entry["url"] for entry in document.get("entries", [])]
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise StagingIOError(f"Malformed manifest: {e}") from e


def unload_manifest_uri(staging_path: str) -> str:
    """UNLOAD ... MANIFEST writes its manifest as '<prefix>manifest'."""
    return staging_path.rstrip("/") + "/" + UNLOAD_MANIFEST_NAME
