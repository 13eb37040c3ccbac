"""
Turns whatever a client attached into durable, fetchable references.

Clients attach files in several shapes: inline base64, a storage
bucket/key pair, a URL, or (from the IDE) a file path with its text. This
module normalizes them once per request into `Attachment` records that carry
URLs and metadata only, resolves a tool call's reference to one concrete URL,
and fetches bytes through a chain of increasingly privileged fallbacks.
"""
import base64
import binascii
import logging
import mimetypes
import os
from typing import Any, Iterable, NamedTuple, Optional
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from config import (
    FETCH_TIMEOUT_SECONDS,
    GENERATED_BUCKET,
    SUPABASE_ANON_KEY,
    UPLOADS_BUCKET,
    UPLOADS_FOLDER,
)
from data_models import Attachment, RawAttachment
from exceptions import AttachmentFetchError, StorageError
from storage import ObjectStorage, parse_storage_url
from tracer import trace
from utils import unique_storage_path

# Buckets whose "<bucket>/<path>" references can be re-signed on the model's behalf.
KNOWN_BUCKETS = (UPLOADS_BUCKET, GENERATED_BUCKET)

# Tool argument keys, in the order they are consulted.
URL_ARG_KEYS = ("file_uri", "url", "image_url")
NAME_ARG_KEYS = ("file_name", "name", "path")


class ResolvedUrl(NamedTuple):
    """A concrete URL for a tool's source and how it was found."""
    url: Optional[str]
    provenance: str
    attachment: Optional[Attachment] = None


NOT_FOUND = ResolvedUrl(None, "none")


def is_absolute_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def guess_mime_type(name: Optional[str], default: str = "application/octet-stream") -> str:
    guessed, _ = mimetypes.guess_type(name or "")
    return guessed or default


def decode_base64(data: str) -> bytes:
    """Decodes plain or data-URL base64 ('data:image/png;base64,...')."""
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    return base64.b64decode(data, validate=False)


def _name_from(raw: RawAttachment) -> str:
    if raw.file_name:
        return raw.file_name
    for candidate in (raw.key, raw.url, raw.signed_url, raw.public_url):
        if candidate:
            tail = os.path.basename(urlparse(candidate).path)
            if tail:
                return tail
    return "file"


# --- Normalization ---
def _minimal(raw: RawAttachment, mime_type: str, file_name: str) -> Attachment:
    """Metadata only: used when no URL can be produced. Never carries bytes."""
    return Attachment(
        mime_type=mime_type,
        file_name=file_name,
        bucket=raw.bucket,
        path=raw.key,
        line_count=raw.line_count,
    )


@trace
def normalize_attachment(raw: RawAttachment, storage: Optional[ObjectStorage]) -> Attachment:
    """
    Normalizes one raw attachment.

    Inline payloads are uploaded under a collision-resistant path, bucket/key
    references are re-signed, URLs pass through untouched. Any upload or
    signing failure degrades to metadata without a URL.
    """
    file_name = _name_from(raw)
    mime_type = raw.mime_type or guess_mime_type(file_name)

    # IDE attachments: the file text is already in the editor; keep its shape only.
    if raw.content is not None and not raw.base64 and not raw.bucket:
        return Attachment(
            mime_type=raw.mime_type or guess_mime_type(file_name, "text/plain"),
            file_name=file_name,
            path=raw.key or file_name,
            line_count=len(raw.content.split("\n")),
        )

    if raw.base64:
        if storage is None:
            logging.warning(f"No storage available; dropping inline payload of '{file_name}'.")
            return _minimal(raw, mime_type, file_name)
        try:
            data = decode_base64(raw.base64)
            path = unique_storage_path(UPLOADS_FOLDER, file_name)
            urls = storage.upload_with_urls(UPLOADS_BUCKET, path, data, mime_type)
        except (binascii.Error, ValueError, StorageError) as e:
            logging.warning(f"Could not upload attachment '{file_name}': {e}")
            return Attachment(mime_type=mime_type, file_name=file_name)
        return Attachment(
            mime_type=mime_type,
            file_name=file_name,
            bucket=UPLOADS_BUCKET,
            path=urls["path"],
            url=urls["url"],
            signed_url=urls["signed_url"],
            public_url=urls["public_url"],
        )

    url = raw.url or raw.signed_url or raw.public_url
    if url:
        bucket, path = raw.bucket, raw.key
        if not (bucket and path) and storage is not None:
            parsed = storage.parse_url(url)
            if parsed:
                bucket, path = parsed
        return Attachment(
            mime_type=mime_type,
            file_name=file_name,
            url=url,
            signed_url=raw.signed_url,
            public_url=raw.public_url,
            bucket=bucket,
            path=path,
            line_count=raw.line_count,
        )

    if raw.bucket and raw.key and storage is not None:
        try:
            signed = storage.signed_url(raw.bucket, raw.key)
        except StorageError as e:
            logging.warning(f"Could not re-sign attachment '{raw.bucket}/{raw.key}': {e}")
            return _minimal(raw, mime_type, file_name)
        return Attachment(
            mime_type=mime_type,
            file_name=file_name,
            bucket=raw.bucket,
            path=raw.key,
            url=signed,
            signed_url=signed,
            public_url=storage.public_url(raw.bucket, raw.key),
        )

    return _minimal(raw, mime_type, file_name)


def normalize_attachments(items: Iterable[Any], storage: Optional[ObjectStorage]) -> list[Attachment]:
    """
    Normalizes a client's attachment list, preserving order and length.

    Already-normalized entries pass through without a second upload.
    """
    normalized = []
    for item in items or []:
        if isinstance(item, Attachment):
            item = item.model_dump(exclude_none=True)
        if not isinstance(item, dict):
            logging.warning(f"Ignoring malformed attachment of type {type(item).__name__}.")
            continue
        try:
            raw = RawAttachment.model_validate(item)
        except ValidationError as e:
            logging.warning(f"Attachment failed validation; keeping metadata only: {e}")
            name = str(item.get("file_name") or item.get("name") or "file")
            normalized.append(Attachment(mime_type=guess_mime_type(name), file_name=name))
            continue
        normalized.append(normalize_attachment(raw, storage))
    return normalized


# --- Resolution ---
def _matches(attachment: Attachment, alias: str, exact: bool) -> bool:
    names = [name for name in (attachment.file_name, attachment.path) if name]
    if exact:
        return alias in names or alias == attachment.best_url
    if any(name.endswith(alias) or alias.endswith(name) for name in names):
        return True
    url_path = urlparse(attachment.best_url).path if attachment.best_url else ""
    return bool(url_path) and url_path.endswith(alias)


def _storage_reference(reference: str, storage: ObjectStorage) -> Optional[tuple[str, str]]:
    """Maps an own-storage URL or a '<bucket>/<path>' string to (bucket, path)."""
    if is_absolute_url(reference):
        return storage.parse_url(reference)
    bucket, _, path = reference.lstrip("/").partition("/")
    if bucket in KNOWN_BUCKETS and path:
        return bucket, path
    return None


@trace
def resolve_best_url(
    args: dict[str, Any],
    attachments: list[Attachment],
    storage: Optional[ObjectStorage] = None,
) -> ResolvedUrl:
    """
    Resolves a tool call's source reference to one fetchable URL.

    Precedence:
        1. an explicit absolute URL in the arguments;
        2. an exact, then suffix, match of the given name/path against the
           attachment list;
        3. the sole attachment, when exactly one exists and no alias was given;
        4. a freshly signed URL for an object in this system's own storage.

    Returns:
        `NOT_FOUND` on exhaustion. Callers must report it as a tool error.
    """
    explicit = next((args[key].strip() for key in URL_ARG_KEYS if is_absolute_url(args.get(key))), None)
    if explicit:
        match = next((a for a in attachments if explicit in (a.url, a.signed_url, a.public_url)), None)
        return ResolvedUrl(explicit, "explicit", match)

    alias = next((str(args[key]).strip() for key in NAME_ARG_KEYS if args.get(key)), None)
    if alias is None:
        alias = next((str(args[key]).strip() for key in URL_ARG_KEYS if args.get(key)), None)

    matched: Optional[Attachment] = None
    if alias:
        for exact in (True, False):
            matched = next((a for a in attachments if _matches(a, alias, exact)), None)
            if matched:
                break
        if matched and matched.best_url:
            return ResolvedUrl(matched.best_url, "attachment", matched)
    elif len(attachments) == 1 and attachments[0].best_url:
        return ResolvedUrl(attachments[0].best_url, "sole_attachment", attachments[0])

    if storage is None:
        return NOT_FOUND
    reference = None
    if matched and matched.bucket and matched.path:
        reference = (matched.bucket, matched.path)
    elif alias:
        reference = _storage_reference(alias, storage)
    if reference is None:
        return NOT_FOUND
    bucket, path = reference
    try:
        return ResolvedUrl(storage.signed_url(bucket, path), "resigned", matched)
    except StorageError as e:
        logging.warning(f"Could not re-sign '{bucket}/{path}': {e}")
        return NOT_FOUND


def resolve_sources(
    args: dict[str, Any],
    attachments: list[Attachment],
    storage: Optional[ObjectStorage] = None,
) -> list[ResolvedUrl]:
    """
    Resolves every source a multi-document call names.

    `file_uris` and `file_names` entries are resolved one by one; when neither
    list is given, the single-source arguments are used. Unresolvable entries
    come back as `NOT_FOUND` so callers can name them.
    """
    uris = [u for u in (args.get("file_uris") or []) if u]
    names = [n for n in (args.get("file_names") or []) if n]
    if not uris and not names:
        return [resolve_best_url(args, attachments, storage)]
    resolved = [resolve_best_url({"file_uri": str(u)}, attachments, storage) for u in uris]
    resolved += [resolve_best_url({"file_name": str(n)}, attachments, storage) for n in names]
    return resolved


# --- Byte retrieval ---
@trace
def fetch_bytes(
    url: str,
    access_token: str = "",
    service_storage: Optional[ObjectStorage] = None,
    timeout: float = FETCH_TIMEOUT_SECONDS,
) -> tuple[bytes, Optional[str]]:
    """
    Fetches the bytes behind a URL, escalating privileges stage by stage.

    Stages: a plain GET, a GET forwarding the caller's bearer token and the
    anon key, then a direct download with the service credential when the URL
    points at this system's storage. A stage's failure is logged and the next
    one runs.

    Returns:
        (bytes, content type or None)

    Raises:
        AttachmentFetchError: If every stage failed.
    """
    failures = []
    attempts = [("plain", {})]
    if access_token:
        attempts.append(("authenticated", {"Authorization": f"Bearer {access_token}", "apikey": SUPABASE_ANON_KEY}))
    for stage, headers in attempts:
        try:
            response = httpx.get(url, headers=headers, timeout=timeout, follow_redirects=True)
            response.raise_for_status()
            return response.content, response.headers.get("content-type")
        except httpx.HTTPError as e:
            logging.warning(f"{stage.capitalize()} fetch of attachment failed: {e}")
            failures.append(f"{stage}: {e}")

    reference = parse_storage_url(url, service_storage.base_url) if service_storage is not None else None
    if reference:
        bucket, path = reference
        try:
            return service_storage.download(bucket, path), None
        except StorageError as e:
            logging.warning(f"Service download of attachment failed: {e}")
            failures.append(f"service: {e}")

    raise AttachmentFetchError(f"Could not fetch {url} ({'; '.join(failures) or 'no stage applicable'})")
