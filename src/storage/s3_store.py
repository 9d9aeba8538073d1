import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union
from urllib.parse import urlparse

import boto3
from botocore.exceptions import ClientError

from core.errors import FetchError, FetchErrorKind
from storage.provider import ObjectStoreProvider, ObjectStream

logger = logging.getLogger(__name__)

MISSING_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "404", "NotFound"})
DENIED_CODES = frozenset({"AccessDenied", "403", "Forbidden", "AllAccessDisabled"})
SIDE_FILE_SUFFIXES = (".metadata", "-manifest.csv", "_SUCCESS", "$folder$")
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
_VIRTUAL_HOST = re.compile(r"^(.+?)\.s3[.-].*amazonaws\.com$")


def parse_s3_url(url: str) -> Tuple[str, str]:
    """
    Split an S3 URL into (bucket, key). Accepts:
        s3://bucket/key
        https://bucket.s3.region.amazonaws.com/key   (virtual-hosted)
        https://s3.region.amazonaws.com/bucket/key   (path-style)
    """
    if url.startswith("s3://"):
        bucket, _, key = url[len("s3://"):].partition("/")
        if not bucket:
            raise ValueError(f"Invalid S3 URL format (s3://): {url}")
        return bucket, key

    parsed = urlparse(url)
    host = parsed.hostname
    if parsed.scheme not in ("http", "https") or not host:
        raise ValueError(f"Invalid S3 URL: {url}")

    path = parsed.path.lstrip("/")
    virtual_hosted = _VIRTUAL_HOST.match(host)
    if virtual_hosted:
        return virtual_hosted.group(1), path

    bucket, _, key = path.partition("/")
    if not bucket:
        raise ValueError(f"Invalid S3 URL: empty path in {url}")
    return bucket, key


def _translate(error: ClientError, uri: str) -> FetchError:
    code = error.response.get("Error", {}).get("Code", "")
    if code in DENIED_CODES:
        return FetchError(FetchErrorKind.ACCESS_DENIED, f"Access denied to {uri}", error)
    if code in MISSING_CODES:
        return FetchError(FetchErrorKind.MISSING, f"Result object not found: {uri}", error)
    return FetchError(FetchErrorKind.MISSING, f"Result object unavailable ({code}): {uri}", error)


class S3ObjectStore(ObjectStoreProvider):
    """S3ObjectStore streams query result objects from S3"""

    def __init__(self, aws_config: Dict[str, Any]) -> None:
        self.s3_client = boto3.client('s3', **aws_config)

    def _split(self, uri: str) -> Tuple[str, str]:
        try:
            return parse_s3_url(uri)
        except ValueError as e:
            raise FetchError(FetchErrorKind.MISSING, str(e), e) from e

    def get_object(self, uri: str) -> ObjectStream:
        bucket, key = self._split(uri)
        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            logger.error(f"Failed to open {uri}: {e}")
            raise _translate(e, uri) from e
        logger.info(f"Opened {uri} ({response.get('ContentLength', 'unknown')} bytes)")
        return ObjectStream(uri=uri, body=response['Body'], content_length=response.get('ContentLength'))

    def list_parts(self, uri_prefix: str) -> List[str]:
        bucket, prefix = self._split(uri_prefix)
        keys: List[str] = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    key = obj['Key']
                    if key.endswith("/") or key.endswith(SIDE_FILE_SUFFIXES):
                        continue
                    keys.append(key)
        except ClientError as e:
            logger.error(f"Failed to list {uri_prefix}: {e}")
            raise _translate(e, uri_prefix) from e
        return [f"s3://{bucket}/{key}" for key in sorted(keys)]

    def download(self, uri: str, output_dir: Union[str, Path]) -> Path:
        bucket, key = self._split(uri)
        filename = os.path.basename(key)
        if not filename:
            raise FetchError(FetchErrorKind.MISSING, f"Could not extract filename from S3 key: {key}")

        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        target = output_path / filename

        stream = self.get_object(uri)
        written = 0
        try:
            with open(target, "wb") as f:
                while True:
                    chunk = stream.body.read(DOWNLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
                    written += len(chunk)
        finally:
            stream.close()

        if stream.content_length is not None and written != stream.content_length:
            target.unlink()
            raise FetchError(FetchErrorKind.CORRUPT,
                             f"Downloaded {written} of {stream.content_length} bytes from {uri}")
        logger.info(f"Downloaded {written} bytes from {bucket}/{key} to {target}")
        return target
