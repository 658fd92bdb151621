from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

# Element bodies handed to the raw-text callback as one string.
RAW_TEXT_ELEMENTS = {"script", "style"}
# Element bodies where markup is not parsed; emitted untouched.
PASSTHROUGH_TEXT_ELEMENTS = {"textarea", "title", "xmp", "plaintext"}

DEFAULT_MAX_PENDING = 1024 * 1024

TAG_NAME_RE = re.compile(r"[a-zA-Z][^\s/>]*")
SEPARATOR_RE = re.compile(r"[\s/]*")
ATTR_NAME_RE = re.compile(r"[^\s/>][^\s/>=]*")
EQUALS_RE = re.compile(r"\s*=\s*")
WHITESPACE_RE = re.compile(r"\s*")
UNQUOTED_VALUE_RE = re.compile(r"[^\s>]*")
UNQUOTED_SAFE_RE = re.compile(r"[^\s\"'=<>`]+")


@dataclass
class Attribute:
    name: str
    raw_value: Optional[str]
    quote: str
    lead_start: int
    end: int
    value_start: Optional[int] = None
    value_end: Optional[int] = None

    @property
    def value(self) -> str:
        if self.raw_value is None:
            return ""
        return html.unescape(self.raw_value)


@dataclass
class StartTag:
    """A parsed start tag that remembers the exact source text it came from.

    Edits are recorded against attribute positions, so ``render()`` only
    touches the attribute values that were changed and copies every other
    byte of the original tag.
    """

    name: str
    raw: str
    attributes: List[Attribute]
    _values: Dict[int, str] = field(default_factory=dict)
    _removed: set = field(default_factory=set)
    _appended: List[tuple] = field(default_factory=list)

    def _index(self, name: str) -> Optional[int]:
        for index, attribute in enumerate(self.attributes):
            if attribute.name == name and index not in self._removed:
                return index
        return None

    def attribute_names(self) -> List[str]:
        seen: List[str] = []
        for index, attribute in enumerate(self.attributes):
            if index not in self._removed and attribute.name not in seen:
                seen.append(attribute.name)
        return seen

    def has(self, name: str) -> bool:
        return self._index(name) is not None or any(n == name for n, _ in self._appended)

    def get(self, name: str) -> Optional[str]:
        index = self._index(name)
        if index is not None:
            if index in self._values:
                return self._values[index]
            return self.attributes[index].value
        for appended_name, value in self._appended:
            if appended_name == name:
                return value
        return None

    def set(self, name: str, value: str) -> None:
        index = self._index(name)
        if index is not None:
            self._values[index] = value
            return
        self._appended = [(n, v) for n, v in self._appended if n != name]
        self._appended.append((name, value))

    def remove(self, name: str) -> None:
        for index, attribute in enumerate(self.attributes):
            if attribute.name == name:
                self._removed.add(index)
                self._values.pop(index, None)
        self._appended = [(n, v) for n, v in self._appended if n != name]

    @property
    def modified(self) -> bool:
        return bool(self._values or self._removed or self._appended)

    def render(self) -> str:
        if not self.modified:
            return self.raw
        pieces: List[str] = []
        cursor = 0
        for index, attribute in enumerate(self.attributes):
            if index in self._removed:
                pieces.append(self.raw[cursor:attribute.lead_start])
                cursor = attribute.end
            elif index in self._values:
                value = self._values[index]
                if attribute.value_start is None:
                    pieces.append(self.raw[cursor:attribute.end])
                    pieces.append('="' + escape_attribute(value, '"') + '"')
                    cursor = attribute.end
                else:
                    quote = attribute.quote
                    start, end = attribute.value_start, attribute.value_end
                    if not quote and not UNQUOTED_SAFE_RE.fullmatch(value):
                        quote = '"'
                        pieces.append(self.raw[cursor:start])
                        pieces.append(f'"{escape_attribute(value, quote)}"')
                    else:
                        pieces.append(self.raw[cursor:start])
                        pieces.append(escape_attribute(value, quote))
                    cursor = end
        tail = self._insertion_point()
        pieces.append(self.raw[cursor:tail])
        for name, value in self._appended:
            pieces.append(" %s=\"%s\"" % (name, escape_attribute(value, '"')))
        pieces.append(self.raw[tail:])
        return "".join(pieces)

    def _insertion_point(self) -> int:
        tail = len(self.raw) - 1
        last_end = self.attributes[-1].end if self.attributes else 0
        if tail > 0 and self.raw[tail - 1] == "/" and last_end < tail:
            tail -= 1
        return tail


def escape_attribute(value: str, quote: str) -> str:
    value = value.replace("&", "&amp;")
    if quote == '"':
        return value.replace('"', "&quot;")
    if quote == "'":
        return value.replace("'", "&#x27;")
    return value


def parse_start_tag(buffer: str, start: int) -> Optional[tuple]:
    """Parse the start tag beginning at ``buffer[start] == '<'``.

    Returns ``(tag, end)`` or ``None`` when the buffer ends before the tag
    does.
    """
    match = TAG_NAME_RE.match(buffer, start + 1)
    pos = match.end()
    size = len(buffer)
    attributes: List[Attribute] = []
    while True:
        lead_start = pos
        pos = SEPARATOR_RE.match(buffer, pos).end()
        if pos >= size:
            return None
        if buffer[pos] == ">":
            raw = buffer[start:pos + 1]
            for attribute in attributes:
                attribute.lead_start -= start
                attribute.end -= start
                if attribute.value_start is not None:
                    attribute.value_start -= start
                    attribute.value_end -= start
            tag = StartTag(name=match.group(0).lower(), raw=raw, attributes=attributes)
            return tag, pos + 1

        name_match = ATTR_NAME_RE.match(buffer, pos)
        name_end = name_match.end()
        if name_end >= size:
            return None
        name = name_match.group(0).lower()

        equals = EQUALS_RE.match(buffer, name_end)
        if equals is None:
            if WHITESPACE_RE.match(buffer, name_end).end() >= size:
                return None
            attributes.append(Attribute(name, None, "", lead_start, name_end))
            pos = name_end
            continue

        value_pos = equals.end()
        if value_pos >= size:
            return None
        quote = buffer[value_pos]
        if quote in "\"'":
            close = buffer.find(quote, value_pos + 1)
            if close == -1:
                return None
            attributes.append(
                Attribute(
                    name,
                    buffer[value_pos + 1:close],
                    quote,
                    lead_start,
                    close + 1,
                    value_pos + 1,
                    close,
                )
            )
            pos = close + 1
        else:
            value_end = UNQUOTED_VALUE_RE.match(buffer, value_pos).end()
            if value_end >= size:
                return None
            attributes.append(
                Attribute(
                    name,
                    buffer[value_pos:value_end],
                    "",
                    lead_start,
                    value_end,
                    value_pos,
                    value_end,
                )
            )
            pos = value_end


StartTagHandler = Callable[[StartTag], Optional[str]]
RawTextHandler = Callable[[StartTag, str], str]


class MarkupTokenizer:
    """Incremental HTML tokenizer that copies its input to its output.

    Start tags are offered to ``on_start_tag``, which may return replacement
    text. Bodies of ``script`` and ``style`` elements are collected and
    offered to ``on_raw_text``. Everything else (text, comments, end tags,
    doctypes) is emitted exactly as received. Bodies larger than
    ``max_raw_text`` characters stop being collected and are streamed through
    unchanged.
    """

    def __init__(
        self,
        on_start_tag: StartTagHandler,
        on_raw_text: RawTextHandler,
        max_raw_text: int,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.on_start_tag = on_start_tag
        self.on_raw_text = on_raw_text
        self.max_raw_text = max_raw_text
        self.max_pending = max_pending
        self.buffer = ""
        self.raw_tag: Optional[StartTag] = None
        self.raw_end_re: Optional[re.Pattern] = None
        self.raw_callback = False
        self.raw_overflow = False

    def feed(self, data: str) -> str:
        self.buffer += data
        return self._drain(final=False)

    def close(self) -> str:
        output = self._drain(final=True)
        if self.buffer:
            output += self.buffer
            self.buffer = ""
        return output

    def _enter_raw_text(self, tag: StartTag) -> None:
        self.raw_tag = tag
        self.raw_end_re = re.compile(r"</%s(?=[\s/>])" % re.escape(tag.name), re.IGNORECASE)
        self.raw_callback = tag.name in RAW_TEXT_ELEMENTS
        self.raw_overflow = False

    def _leave_raw_text(self) -> None:
        self.raw_tag = None
        self.raw_end_re = None
        self.raw_callback = False
        self.raw_overflow = False

    def _drain(self, final: bool) -> str:
        buffer = self.buffer
        size = len(buffer)
        pos = 0
        out: List[str] = []

        while pos < size:
            if self.raw_tag is not None:
                end_match = self.raw_end_re.search(buffer, pos)
                if end_match is None:
                    if final:
                        out.append(buffer[pos:])
                        pos = size
                        break
                    if not self.raw_callback or self.raw_overflow or size - pos > self.max_raw_text:
                        # Hold back enough characters to recognise a split end tag.
                        keep = len(self.raw_tag.name) + 2
                        flush_to = max(pos, size - keep)
                        out.append(buffer[pos:flush_to])
                        pos = flush_to
                        self.raw_overflow = True
                    break
                body = buffer[pos:end_match.start()]
                if self.raw_callback and not self.raw_overflow:
                    out.append(self.on_raw_text(self.raw_tag, body))
                else:
                    out.append(body)
                pos = end_match.start()
                self._leave_raw_text()
                continue

            lt = buffer.find("<", pos)
            if lt == -1:
                out.append(buffer[pos:])
                pos = size
                break
            if lt > pos:
                out.append(buffer[pos:lt])
                pos = lt

            token = self._scan(buffer, pos, final)
            if token is None:
                if size - pos > self.max_pending:
                    out.append("<")
                    pos += 1
                    continue
                break

            kind, end, tag = token
            if kind == "start":
                replacement = self.on_start_tag(tag)
                out.append(tag.raw if replacement is None else replacement)
                if tag.name in RAW_TEXT_ELEMENTS or tag.name in PASSTHROUGH_TEXT_ELEMENTS:
                    self._enter_raw_text(tag)
            else:
                out.append(buffer[pos:end])
            pos = end

        self.buffer = buffer[pos:]
        return "".join(out)

    def _scan(self, buffer: str, pos: int, final: bool) -> Optional[tuple]:
        size = len(buffer)
        if pos + 1 >= size:
            return ("text", size, None) if final else None
        following = buffer[pos + 1]

        if following == "!":
            if buffer.startswith("<!--", pos):
                close = buffer.find("-->", pos + 4)
                if close == -1:
                    return ("text", size, None) if final else None
                return "comment", close + 3, None
            if size - pos < 4 and "<!--".startswith(buffer[pos:]) and not final:
                return None
            return self._until_gt(buffer, pos, final, "declaration")

        if following == "?":
            return self._until_gt(buffer, pos, final, "declaration")

        if following == "/":
            return self._until_gt(buffer, pos, final, "end")

        if following.isascii() and following.isalpha():
            parsed = parse_start_tag(buffer, pos)
            if parsed is None:
                return ("text", size, None) if final else None
            tag, end = parsed
            return "start", end, tag

        return "text", pos + 1, None

    @staticmethod
    def _until_gt(buffer: str, pos: int, final: bool, kind: str) -> Optional[tuple]:
        close = buffer.find(">", pos + 2)
        if close == -1:
            return ("text", len(buffer), None) if final else None
        return kind, close + 1, None
