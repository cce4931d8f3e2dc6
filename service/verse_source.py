"""Remote verse feed: fetched as text and parsed as data, never executed."""

from __future__ import annotations

import ast
import json
import logging
import re
from typing import Iterator, Mapping, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from domain.verse_video import (
    INPUT_EMPTY_CODE,
    INPUT_FETCH_CODE,
    INPUT_PARSE_CODE,
    InputFetchError,
    SettingsValidationError,
    TextItem,
)

LOGGER = logging.getLogger("verse_video.verse_source")

DEFAULT_VERSES_URL = (
    "https://raw.githubusercontent.com/chelms21/test-picture-thing/main/verses.js"
)
DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0
USER_AGENT = "verse-video/0.1"

REFERENCE_KEYS = ("reference", "ref")
BODY_KEYS = ("body", "text")

TOKEN_PATTERN = re.compile(
    r"""
    (?P<skip>\s+|//[^\n]*|/\*.*?\*/)
    |(?P<string>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*'|`(?:[^`\\]|\\.)*`)
    |(?P<name>[A-Za-z_$][\w$]*)
    |(?P<number>-?\d+(?:\.\d+)?)
    |(?P<punct>[\[\]{}:,;=()])
    |(?P<other>.)
    """,
    re.VERBOSE | re.DOTALL,
)


def tokenize_script(text_value: str) -> Iterator[tuple[str, str]]:
    """Yield (kind, value) tokens, dropping whitespace and comments."""
    for match in TOKEN_PATTERN.finditer(text_value):
        kind = match.lastgroup or "other"
        if kind == "skip":
            continue
        yield kind, match.group()


TEMPLATE_ESCAPE_PATTERN = re.compile(
    r"\\(u\{[0-9a-fA-F]{1,6}\}|u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|.)", re.DOTALL
)
SIMPLE_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "0": "\0",
    "\n": "",
}


def decode_template_literal(literal: str) -> str:
    """Decode a backtick literal; interpolation is code and is rejected."""
    content = literal[1:-1]
    if "${" in content:
        raise InputFetchError(
            INPUT_PARSE_CODE, f"template interpolation is not data: {literal[:40]!r}"
        )

    def replace(match: re.Match[str]) -> str:
        escape = match.group(1)
        if escape.startswith("u{"):
            return chr(int(escape[2:-1], 16))
        if escape[0] in "ux" and len(escape) > 1:
            return chr(int(escape[1:], 16))
        return SIMPLE_ESCAPES.get(escape, escape)

    try:
        return TEMPLATE_ESCAPE_PATTERN.sub(replace, content)
    except ValueError as exc:
        raise InputFetchError(
            INPUT_PARSE_CODE, f"invalid escape in template literal: {literal[:40]!r}"
        ) from exc


def decode_string_literal(literal: str) -> str:
    """Decode a quoted string literal without evaluating code."""
    if literal.startswith("`"):
        return decode_template_literal(literal)
    try:
        value = ast.literal_eval(literal)
    except (SyntaxError, ValueError) as exc:
        raise InputFetchError(
            INPUT_PARSE_CODE, f"invalid string literal: {literal[:40]!r}"
        ) from exc
    if not isinstance(value, str):
        raise InputFetchError(INPUT_PARSE_CODE, "string literal expected")
    return value


def parse_script_records(text_value: str) -> list[dict[str, object]]:
    """Extract the first array of flat object literals from a script."""
    tokens = list(tokenize_script(text_value))
    try:
        position = tokens.index(("punct", "["))
    except ValueError as exc:
        raise InputFetchError(INPUT_PARSE_CODE, "no array literal found") from exc

    records: list[dict[str, object]] = []
    current: dict[str, object] | None = None
    pending_key: str | None = None
    expect_value = False

    for kind, value in tokens[position + 1 :]:
        if current is None:
            if (kind, value) == ("punct", "]"):
                return records
            if (kind, value) == ("punct", "{"):
                current = {}
                continue
            if (kind, value) == ("punct", ","):
                continue
            raise InputFetchError(
                INPUT_PARSE_CODE, f"unexpected token in array: {value!r}"
            )

        if (kind, value) == ("punct", "}"):
            records.append(current)
            current = None
            pending_key = None
            expect_value = False
        elif expect_value:
            if kind == "string":
                current[pending_key or ""] = decode_string_literal(value)
            elif kind == "number":
                current[pending_key or ""] = value
            else:
                raise InputFetchError(
                    INPUT_PARSE_CODE,
                    f"unsupported value for {pending_key!r}: {value!r}",
                )
            pending_key = None
            expect_value = False
        elif pending_key is None and kind in ("name", "string"):
            pending_key = decode_string_literal(value) if kind == "string" else value
        elif pending_key is not None and (kind, value) == ("punct", ":"):
            expect_value = True
        elif (kind, value) == ("punct", ","):
            continue
        else:
            raise InputFetchError(
                INPUT_PARSE_CODE, f"unexpected token in object: {value!r}"
            )

    raise InputFetchError(INPUT_PARSE_CODE, "array literal is not terminated")


def first_present(record: Mapping[str, object], keys: Sequence[str]) -> object:
    for key in keys:
        if key in record:
            return record[key]
    return None


def build_text_items(records: Sequence[object]) -> tuple[TextItem, ...]:
    """Validate raw records into TextItems."""
    items: list[TextItem] = []
    for index, record in enumerate(records):
        if not isinstance(record, Mapping):
            raise InputFetchError(INPUT_PARSE_CODE, f"record {index} is not an object")
        reference = first_present(record, REFERENCE_KEYS)
        body = first_present(record, BODY_KEYS)
        if not isinstance(reference, str) or not isinstance(body, str):
            raise InputFetchError(
                INPUT_PARSE_CODE,
                f"record {index} needs string reference and body fields",
            )
        try:
            items.append(TextItem(reference=reference.strip(), body=body.strip()))
        except SettingsValidationError as exc:
            raise InputFetchError(INPUT_PARSE_CODE, f"record {index}: {exc}") from exc

    if not items:
        raise InputFetchError(INPUT_EMPTY_CODE, "verse feed contains no items")
    return tuple(items)


def parse_verses_document(text_value: str) -> tuple[TextItem, ...]:
    """Parse a JSON array or a script defining an array of verse objects."""
    stripped = text_value.replace("\ufeff", "").strip()
    if stripped.startswith("["):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = parse_script_records(stripped)
    else:
        payload = parse_script_records(stripped)
    if not isinstance(payload, list):
        raise InputFetchError(INPUT_PARSE_CODE, "verse feed is not an array")
    return build_text_items(payload)


class HttpVerseSource:
    """Loads the verse list from a URL once per call."""

    def __init__(
        self,
        url: str = DEFAULT_VERSES_URL,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    def fetch_text(self) -> str:
        request = Request(self.url, headers={"User-Agent": USER_AGENT}, method="GET")
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read()
        except (URLError, OSError, ValueError) as exc:
            raise InputFetchError(
                INPUT_FETCH_CODE, f"failed to fetch verses from {self.url}: {exc}"
            ) from exc
        try:
            return raw.decode("utf-8", errors="strict")
        except UnicodeDecodeError as exc:
            raise InputFetchError(
                INPUT_PARSE_CODE,
                f"verse feed is not valid UTF-8 at byte offset {exc.start}",
            ) from exc

    def load(self) -> tuple[TextItem, ...]:
        items = parse_verses_document(self.fetch_text())
        LOGGER.info("verse_video.input.loaded count=%s url=%s", len(items), self.url)
        return items
