"""범용 에셋 업로드.

플랫폼 업로드 엔드포인트가 없는 드라이버가 위임하는 외부 오브젝트 스토어
업로더. 본문을 그대로 POST하고 응답 텍스트를 에셋 URI로 사용한다.
"""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from cml_ci.config import UploadConfig
from cml_ci.errors import RemoteCallError
from cml_ci.models import UploadResult

logger = logging.getLogger(__name__)

_DEFAULT_MIME = "application/octet-stream"


def fetch_upload_data(path: Path, mime_type: str | None = None) -> tuple[bytes, str, int]:
    """업로드할 파일의 (본문, MIME, 크기)를 반환한다."""
    data = path.read_bytes()
    mime = mime_type or mimetypes.guess_type(path.name)[0] or _DEFAULT_MIME
    return data, mime, len(data)


def upload(path: Path, config: UploadConfig, *, mime_type: str | None = None) -> UploadResult:
    """파일을 에셋 서버에 올리고 URI를 반환한다.

    Raises:
        RemoteCallError: 전송 실패 또는 2xx/3xx가 아닌 응답
    """
    data, mime, size = fetch_upload_data(path, mime_type)
    headers = {"Content-Type": mime, "Content-Length": str(size)}

    try:
        with httpx.Client(timeout=config.timeout_sec) as client:
            resp = client.post(config.endpoint, content=data, headers=headers)
    except httpx.HTTPError as exc:
        raise RemoteCallError(0, f"Upload failed: {exc}") from exc

    if resp.status_code >= 400:
        raise RemoteCallError(resp.status_code, resp.reason_phrase or f"HTTP {resp.status_code}")

    uri = resp.text.strip()
    logger.info("Uploaded %s (%s, %d bytes) -> %s", path.name, mime, size, uri)
    return UploadResult(uri=uri, mime=mime, size=size)


def watermark_uri(uri: str, type_: str) -> str:
    """URI 쿼리에 cml=<type>를 덧붙인다."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append(("cml", type_))
    return urlunsplit(parts._replace(query=urlencode(query)))
