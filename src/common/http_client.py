"""Shared HTTP helpers used by every network endpoint.

Encapsulates request/timeout error handling so endpoint modules avoid
duplicating try/except blocks. Failures are normalized onto the error
taxonomy in ``common.errors``; retrying is left to the caller
(see ``common.retry``) so one policy governs both metadata and downloads.
"""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import requests

from constants import Constants
from common.errors import (
    AuthRequired,
    NetworkPermanent,
    NetworkTransient,
    NotFound,
    OperationCancelled,
)
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)

USER_AGENT = "boxpm/0.1"
_TRANSIENT_STATUS = {408, 425, 429}


def _headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    merged = {"User-Agent": USER_AGENT}
    if headers:
        merged.update(headers)
    return merged


def raise_for_status(status_code: int, url: str, *, package: Optional[str] = None) -> None:
    """Map an HTTP status onto the error taxonomy; 2xx/3xx return silently."""
    if status_code < 400:
        return
    target = safe_url(url)
    if status_code == 404:
        raise NotFound(f"{target} returned 404", package=package)
    if status_code in (401, 403):
        raise AuthRequired(f"{target} returned {status_code}; credentials required", package=package)
    if status_code >= 500 or status_code in _TRANSIENT_STATUS:
        raise NetworkTransient(f"{target} returned {status_code}", package=package)
    raise NetworkPermanent(f"{target} returned {status_code}", package=package)


def send(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = Constants.REQUEST_TIMEOUT,
    stream: bool = False,
    package: Optional[str] = None,
    **kwargs: Any,
) -> requests.Response:
    """Perform one HTTP request with consistent error handling and DEBUG traces.

    Args:
        method: HTTP method.
        url: Target URL.
        headers: Extra request headers.
        timeout: Per-request timeout in seconds.
        stream: Defer body download (for artifacts).
        package: Package name used in error diagnostics.
        **kwargs: Passed through to requests.request.

    Returns:
        requests.Response: A response with a non-error status.
    """
    safe_target = safe_url(url)
    with Timer() as t:
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP request",
                extra=extra_context(
                    event="http_request",
                    component="http_client",
                    action=method,
                    target=safe_target,
                    package=package,
                )
            )
        try:
            res = requests.request(
                method, url, headers=_headers(headers), timeout=timeout, stream=stream, **kwargs
            )
        except requests.Timeout as exc:
            logger.debug(
                "HTTP timeout",
                extra=extra_context(
                    event="http_exception",
                    component="http_client",
                    action=method,
                    outcome="timeout",
                    target=safe_target,
                )
            )
            raise NetworkTransient(
                f"request to {safe_target} timed out after {timeout} seconds", package=package, cause=exc
            ) from exc
        except requests.ConnectionError as exc:
            raise NetworkTransient(f"connection error for {safe_target}", package=package, cause=exc) from exc
        except requests.RequestException as exc:
            raise NetworkPermanent(f"request to {safe_target} failed: {exc}", package=package, cause=exc) from exc

        if is_debug_enabled(logger):
            logger.debug(
                "HTTP response",
                extra=extra_context(
                    event="http_response",
                    component="http_client",
                    action=method,
                    outcome="success" if res.status_code < 400 else "error_status",
                    status_code=res.status_code,
                    duration_ms=t.duration_ms(),
                    target=safe_target,
                )
            )
    if res.status_code >= 400:
        res.close()
        raise_for_status(res.status_code, url, package=package)
    return res


def get_json(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = Constants.REQUEST_TIMEOUT,
    package: Optional[str] = None,
) -> Any:
    """GET ``url`` and decode a JSON body.

    Raises:
        NetworkPermanent: When the body is not valid JSON.
    """
    merged = {"Accept": "application/json"}
    merged.update(headers or {})
    res = send("GET", url, headers=merged, timeout=timeout, package=package)
    try:
        return json.loads(res.text)
    except json.JSONDecodeError as exc:
        if is_debug_enabled(logger):
            logger.debug(
                "JSON decode error",
                extra=extra_context(
                    event="parse",
                    component="http_client",
                    action="get_json",
                    outcome="json_decode_error",
                    target=safe_url(url),
                )
            )
        raise NetworkPermanent(f"invalid JSON from {safe_url(url)}", package=package, cause=exc) from exc


def get_optional_json(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = Constants.REQUEST_TIMEOUT,
    package: Optional[str] = None,
) -> Optional[Any]:
    """Like ``get_json`` but a 404 yields None instead of NotFound."""
    try:
        return get_json(url, headers=headers, timeout=timeout, package=package)
    except NotFound:
        return None


def download(
    url: str,
    dest: Path,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = Constants.REQUEST_TIMEOUT,
    cancel_event: Optional[threading.Event] = None,
    package: Optional[str] = None,
    chunk_size: int = Constants.DOWNLOAD_CHUNK_SIZE,
) -> Tuple[Path, int]:
    """Stream ``url`` into ``dest``, checking for cancellation between chunks.

    A partial file is removed on any failure so callers never see one.

    Returns:
        Tuple of (dest, bytes written).
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    res = send("GET", url, headers=headers, timeout=timeout, stream=True, package=package)
    written = 0
    try:
        with res, open(dest, "wb") as fh:
            for chunk in res.iter_content(chunk_size=chunk_size):
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelled("download interrupted", package=package)
                if chunk:
                    fh.write(chunk)
                    written += len(chunk)
    except requests.RequestException as exc:
        dest.unlink(missing_ok=True)
        raise NetworkTransient(f"download of {safe_url(url)} interrupted", package=package, cause=exc) from exc
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    if is_debug_enabled(logger):
        logger.debug(
            "Download complete",
            extra=extra_context(
                event="download",
                component="http_client",
                action="GET",
                outcome="success",
                target=safe_url(url),
                package=package,
            )
        )
    return dest, written
