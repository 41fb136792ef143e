"""
Attachment uploads.

The attachment endpoint replaces on PUT when a same-named attachment exists
and wants POST when it does not, and it does not say which up front. We try
PUT and fall back to POST once.
"""

import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Any

from atl_cli.core.client import APIClient, HttpError, parse_payload
from atl_cli.core.types import RawResponse

UPLOAD_EXCERPT_LIMIT = 200
PRIMARY_METHOD = "PUT"
FALLBACK_METHOD = "POST"
FALLBACK_STATUSES = (400, 404)

logger = logging.getLogger(__name__)


class UploadError(HttpError):
    """Upload rejected by the server, after the verb fallback if it applied."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(
            status,
            body,
            message=f"Upload failed: HTTP {status}: {body[:UPLOAD_EXCERPT_LIMIT]}",
            limit=UPLOAD_EXCERPT_LIMIT,
        )


def encode_multipart(payload: bytes, filename: str, content_type: str | None = None) -> tuple[bytes, str]:
    """
    Build a multipart/form-data body with a single ``file`` part.

    Returns:
        (body, content type header value including the boundary)

    """
    boundary = f"----FormBoundary{uuid.uuid4().hex}"
    part_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    safe_name = filename.replace('"', "%22")
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="{safe_name}"\r\n'
        f"Content-Type: {part_type}\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
    return head + payload + tail, f"multipart/form-data; boundary={boundary}"


def upload_attachment(
    client: APIClient,
    path: str,
    payload: bytes,
    filename: str,
    content_type: str | None = None,
) -> Any:
    """
    Upload binary content to an attachment endpoint.

    Args:
        client: API client providing the transport
        path: Attachment endpoint, e.g. /wiki/rest/api/content/{id}/child/attachment
        payload: File bytes
        filename: Name the attachment is stored under
        content_type: Part content type (guessed from filename if omitted)

    Returns:
        Parsed response metadata (raw text if not JSON)

    Raises:
        UploadError: If the upload was rejected
        TransportError: On network failure

    """
    body, multipart_type = encode_multipart(payload, filename, content_type)
    headers = {
        "Content-Type": multipart_type,
        "X-Atlassian-Token": "nocheck",
    }

    response = client.send(PRIMARY_METHOD, path, body, headers)
    if response.status in FALLBACK_STATUSES:
        logger.debug(
            "%s %s returned %d, retrying with %s",
            PRIMARY_METHOD,
            path,
            response.status,
            FALLBACK_METHOD,
        )
        response = client.send(FALLBACK_METHOD, path, body, headers)

    return _upload_result(response)


def upload_file(client: APIClient, path: str, filepath: str | Path, filename: str | None = None) -> Any:
    """Upload a local file; the attachment name defaults to the file's name."""
    file_path = Path(filepath)
    return upload_attachment(client, path, file_path.read_bytes(), filename or file_path.name)


def _upload_result(response: RawResponse) -> Any:
    if 200 <= response.status < 300:
        return parse_payload(response.text)
    raise UploadError(response.status, response.text)
