"""
azure_errors.py
===============
Classifies exceptions raised by Azure SDK calls into user-facing error
categories and renders them as error records on stderr.

The classification is a static lookup on exception type. The exception chain
(``__cause__`` / ``__context__``) is walked from the outside in and the first
exception with a known type decides the category. A ValueError is the one
exception: it is only remembered, and a known inner exception overrides it.
"""

import json
import logging
import xml.etree.ElementTree as ElementTree
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, NoReturn, Optional

import typer
from azure.core.exceptions import (
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from rich.console import Console
from rich.markup import escape

logger = logging.getLogger(__name__)
err_console = Console(stderr=True)


# ── Data models ───────────────────────────────────────────────────────────────


class ErrorCategory(str, Enum):
    INVALID_OPERATION = "InvalidOperation"
    CONNECTION_ERROR = "ConnectionError"
    INVALID_DATA = "InvalidData"
    NOT_SPECIFIED = "NotSpecified"


@dataclass
class ErrorRecord:
    exception: BaseException
    category: ErrorCategory
    target: Any = None
    error_id: str = ""

    @property
    def message(self) -> str:
        return str(self.exception) or type(self.exception).__name__


class CmdletError(Exception):
    """Raised when a cmdlet precondition does not hold."""


# ── Classification ────────────────────────────────────────────────────────────


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _strip_namespaces(root: ElementTree.Element) -> None:
    for element in root.iter():
        if isinstance(element.tag, str) and "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]


def cloud_error_code(exc: HttpResponseError) -> Optional[str]:
    """
    Best-effort extraction of the service error code. Tries the OData error the
    SDK already parsed, then an XML body (<ErrorCode>, used by the classic
    service management APIs), then a JSON body ({"error": {"code": ...}}).
    """
    error = getattr(exc, "error", None)
    if error is not None and getattr(error, "code", None):
        return error.code

    response = getattr(exc, "response", None)
    if response is None:
        return None
    try:
        body = response.text()
    except Exception:  # body already consumed or not decodable
        return None
    if not body:
        return None

    body = body.strip()
    if body.startswith("<"):
        try:
            root = ElementTree.fromstring(body)
        except ElementTree.ParseError:
            return None
        _strip_namespaces(root)
        node = root if root.tag == "ErrorCode" else root.find(".//ErrorCode")
        return node.text if node is not None else None

    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict):
        inner = payload.get("error", payload)
        if isinstance(inner, dict):
            return inner.get("code") or inner.get("Code")
    return None


def _response_status(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def classify_exception(exc: BaseException, target: Any = None) -> ErrorRecord:
    """
    Map an exception (or the first known exception in its chain) to an ErrorRecord.

    A ValueError only records InvalidData and the walk goes on, so a known
    exception further down the chain still decides the category.
    """
    record = None
    for ex in _exception_chain(exc):
        if isinstance(ex, HttpResponseError):
            code = cloud_error_code(ex)
            if code:
                logger.info(f"Cloud service returned error code: {code}")
            return ErrorRecord(ex, ErrorCategory.INVALID_OPERATION, target)

        if isinstance(ex, (ServiceRequestError, ServiceResponseError, ConnectionError)):
            status = _response_status(ex)
            if status is not None:
                logger.info(f"Web request failed with status code: {status}")
            return ErrorRecord(ex, ErrorCategory.CONNECTION_ERROR, target)

        if isinstance(ex, ValueError):
            logger.info(f"Invalid input: {ex}")
            record = ErrorRecord(ex, ErrorCategory.INVALID_DATA, target)
            continue

        if isinstance(ex, (TypeError, AttributeError)):
            logger.info(f"Invalid input: {ex}")
            return ErrorRecord(ex, ErrorCategory.INVALID_DATA, target)

    return record or ErrorRecord(exc, ErrorCategory.NOT_SPECIFIED, target)


# ── Output ────────────────────────────────────────────────────────────────────


def write_error(record: ErrorRecord) -> None:
    err_console.print(
        f"[bold red]{record.category.value}[/bold red]: [red]{escape(record.message)}[/red]",
        markup=True,
        highlight=False,
    )


def handle_exception(exc: BaseException, target: Any = None) -> ErrorRecord:
    record = classify_exception(exc, target)
    write_error(record)
    return record


def fail(exc: BaseException, target: Any = None) -> NoReturn:
    """Classify and report ``exc``, then exit the command with status 1."""
    handle_exception(exc, target)
    raise typer.Exit(1) from exc
