"""URL proxification and the content rewrite engines.

Every engine funnels references through :func:`proxify`, which turns any
resolvable http(s) reference into ``{origin}/?{param}={quoted absolute URL}``.
The CSS, JS and JSON engines work on a fully buffered body and give up on
bodies larger than the configured ceiling. The HTML engine works on a stream
of chunks and never holds the whole document.
"""

from __future__ import annotations

import codecs
import itertools
import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple
from urllib.parse import parse_qsl, quote, urljoin, urlsplit

from bs4.dammit import EncodingDetector

from markup import MarkupTokenizer, StartTag

logger = logging.getLogger("rewriting")

DEFAULT_TARGET_PARAM = "u"
DEFAULT_MAX_REWRITE_BYTES = 2_000_000
SNIFF_BYTES = 1024

EXCLUDED_SCHEMES = ("data:", "blob:", "about:", "mailto:", "javascript:", "tel:")
ALLOWED_SCHEMES = {"http", "https"}

# Browsers drop these before looking at a scheme, so "java\tscript:" is still javascript:.
SCHEME_NOISE_RE = re.compile(r"[\t\n\r]")
URL_SHAPED_RE = re.compile(r"^(?:https?://|/)", re.IGNORECASE)
PATH_TARGET_RE = re.compile(r"^https?://[^/]", re.IGNORECASE)


# ------------------------------------------------------------------------------
# URL proxification
# ------------------------------------------------------------------------------

def is_excluded(reference: str) -> bool:
    head = SCHEME_NOISE_RE.sub("", reference[:32]).lstrip().lower()
    return head.startswith(EXCLUDED_SCHEMES)


def is_on_origin(url: str, origin: str) -> bool:
    if not url.startswith(origin):
        return False
    return len(url) == len(origin) or url[len(origin)] in "/?#"


def resolve_reference(reference: str, base: str) -> Optional[str]:
    """Resolve ``reference`` against ``base``; ``None`` when the result is not a usable http(s) URL."""
    try:
        absolute = urljoin(base, reference.strip())
        parts = urlsplit(absolute)
        parts.port
    except ValueError:
        return None
    if parts.scheme.lower() not in ALLOWED_SCHEMES or not parts.hostname:
        return None
    return absolute


def _proxy_target(reference: str, base: str, origin: str) -> Optional[str]:
    """The absolute URL ``reference`` should be fetched through the proxy, or ``None`` to leave it alone."""
    if not reference:
        return None
    candidate = reference.strip()
    if not candidate or candidate.startswith("#") or is_excluded(candidate):
        return None
    if is_on_origin(candidate, origin):
        return None
    absolute = resolve_reference(candidate, base)
    if absolute is None or is_on_origin(absolute, origin):
        return None
    return absolute


def proxify(
    reference: str,
    base: str,
    origin: str,
    param: str = DEFAULT_TARGET_PARAM,
) -> str:
    """Return ``reference`` addressed through the proxy at ``origin``.

    Anything that cannot or must not be proxied is returned unchanged:
    empty and fragment-only references, excluded schemes, unresolvable
    references and references that already point at the proxy. The fragment
    stays outside the encoded target so in-page anchors keep working.
    """
    absolute = _proxy_target(reference, base, origin)
    if absolute is None:
        return reference

    target, _, fragment = absolute.partition("#")
    proxied = f"{origin}/?{param}={quote(target, safe='')}"
    if fragment:
        proxied = f"{proxied}#{fragment}"
    return proxied


def proxify_path(reference: str, base: str, origin: str) -> str:
    """Return ``reference`` as ``{origin}/{absolute URL}``.

    Used for form actions: a GET submission replaces the action's query
    string, so the target has to travel in the path.
    """
    absolute = _proxy_target(reference, base, origin)
    if absolute is None:
        return reference
    return f"{origin}/{absolute.partition('#')[0]}"


def deproxify(url: str, param: str = DEFAULT_TARGET_PARAM) -> Optional[str]:
    """Recover the absolute target embedded in a proxied URL."""
    parts = urlsplit(url)
    for name, value in parse_qsl(parts.query, keep_blank_values=True):
        if name == param:
            if parts.fragment:
                return f"{value}#{parts.fragment}"
            return value
    # Path form, as written for form actions.
    remainder = parts.path.lstrip("/")
    if PATH_TARGET_RE.match(remainder):
        target = f"{remainder}?{parts.query}" if parts.query else remainder
        if parts.fragment:
            return f"{target}#{parts.fragment}"
        return target
    return None


@dataclass(frozen=True)
class RewriteContext:
    base: str
    origin: str
    max_bytes: int = DEFAULT_MAX_REWRITE_BYTES
    param: str = DEFAULT_TARGET_PARAM

    def proxify(self, reference: str) -> str:
        return proxify(reference, self.base, self.origin, self.param)

    def proxify_path(self, reference: str) -> str:
        return proxify_path(reference, self.base, self.origin)

    def with_base(self, base: str) -> "RewriteContext":
        return replace(self, base=base)


# ------------------------------------------------------------------------------
# Content dispatch
# ------------------------------------------------------------------------------

HTML_TYPES = {"text/html", "application/xhtml+xml"}
CSS_TYPES = {"text/css"}
JS_TYPES = {
    "application/javascript",
    "application/x-javascript",
    "application/ecmascript",
    "text/javascript",
    "text/ecmascript",
    "text/jscript",
    "module",
}
JSON_TYPES = {"application/json", "text/json"}
GENERIC_TYPES = {"", "application/octet-stream", "text/plain", "binary/octet-stream"}

EXTENSION_KINDS = {
    ".css": "css",
    ".js": "js",
    ".mjs": "js",
    ".json": "json",
}


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def classify_content(content_type: Optional[str], path: str = "") -> Optional[str]:
    """Pick the rewrite engine for a response: ``html``, ``css``, ``js``, ``json`` or ``None``."""
    kind = media_type(content_type)
    if kind in HTML_TYPES:
        return "html"
    if kind in CSS_TYPES:
        return "css"
    if kind in JS_TYPES:
        return "js"
    if kind in JSON_TYPES or kind.endswith("+json"):
        return "json"
    if kind in GENERIC_TYPES:
        lowered = path.lower()
        for extension, extension_kind in EXTENSION_KINDS.items():
            if lowered.endswith(extension):
                return extension_kind
    return None


CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)


def charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    match = CHARSET_RE.search(content_type or "")
    return match.group(1) if match else None


def normalize_charset(charset: Optional[str]) -> str:
    if charset:
        try:
            return codecs.lookup(charset).name
        except LookupError:
            logger.warning("Unknown charset %r; falling back to utf-8", charset)
    return "utf-8"


# ------------------------------------------------------------------------------
# CSS
# ------------------------------------------------------------------------------

CSS_URL_RE = re.compile(
    r"""url\(\s*(?:(?P<quote>['"])(?P<quoted>.*?)(?P=quote)|(?P<bare>[^'"\)\s]*))\s*\)""",
    re.IGNORECASE | re.DOTALL,
)
CSS_IMPORT_RE = re.compile(r"""@import\s+(?!url\()(?P<quote>['"]?)(?P<url>[^'"\s;]+)(?P=quote)""", re.IGNORECASE)


def _splice(match: re.Match, group: str, value: str) -> str:
    start = match.start(group) - match.start()
    end = match.end(group) - match.start()
    whole = match.group(0)
    return whole[:start] + value + whole[end:]


def rewrite_css(text: str, context: RewriteContext) -> str:
    """Rewrite ``url(...)`` references and ``@import`` targets in a stylesheet."""
    if not text or len(text) > context.max_bytes:
        return text

    def replace_url(match: re.Match) -> str:
        group = "quoted" if match.group("quote") else "bare"
        reference = match.group(group)
        if not reference or is_excluded(reference):
            return match.group(0)
        return _splice(match, group, context.proxify(reference))

    def replace_import(match: re.Match) -> str:
        reference = match.group("url")
        if is_excluded(reference):
            return match.group(0)
        return _splice(match, "url", context.proxify(reference))

    try:
        rewritten = CSS_URL_RE.sub(replace_url, text)
        return CSS_IMPORT_RE.sub(replace_import, rewritten)
    except Exception as exc:
        logger.exception("CSS rewrite failed for %s: %s", context.base, exc)
        return text


# ------------------------------------------------------------------------------
# JavaScript
# ------------------------------------------------------------------------------

JS_URL = r"(?:https?://|/)[^'\"`]+"

JS_FETCH_RE = re.compile(r"""(\bfetch\(\s*)(['"`])(?P<url>%s)\2""" % JS_URL, re.IGNORECASE)
JS_IMPORT_RE = re.compile(r"""(\bimport\(\s*)(['"`])(?P<url>%s)\2(\s*\))""" % JS_URL)
JS_IMPORT_SCRIPTS_RE = re.compile(r"""(\bimportScripts\()(?P<args>[^)]*)\)""")
JS_XHR_OPEN_RE = re.compile(
    r"""(\.open\(\s*(['"`])(?:GET|POST|PUT|PATCH|DELETE|OPTIONS|HEAD)\2\s*,\s*)(['"`])(?P<url>%s)\3""" % JS_URL,
    re.IGNORECASE,
)
JS_WORKER_RE = re.compile(r"""(\bnew\s+(?:Shared)?Worker\(\s*)(['"`])(?P<url>%s)\2""" % JS_URL)
JS_LOCATION_RE = re.compile(r"""(\blocation(?:\.href)?\s*=\s*)(['"`])(?P<url>%s)\2""" % JS_URL)
JS_LOCATION_CALL_RE = re.compile(r"""(\blocation\.(?:assign|replace)\(\s*)(['"`])(?P<url>%s)\2""" % JS_URL)
JS_SERVICE_WORKER_RE = re.compile(
    r"""(\b(?:registerServiceWorker|serviceWorker\.register)\(\s*)(['"`])(?P<url>%s)\2""" % JS_URL
)
JS_SOURCE_MAP_RE = re.compile(r"""(//[#@]\s*sourceMappingURL=)(?P<url>\S+)""")
JS_GENERIC_RE = re.compile(r"""(['"`])(?P<url>%s)\1""" % JS_URL)
JS_IMPORT_ARG_RE = re.compile(r"""^(\s*)(['"`])(.*)\2(\s*)$""", re.DOTALL)
JS_UNSAFE_LITERAL_RE = re.compile(r"[\s<>\\]|\$\{")
JS_CONCAT_BEFORE_RE = re.compile(r"\+\s*$")
JS_CONCAT_AFTER_RE = re.compile(r"\s*\+")


def rewrite_js(text: str, context: RewriteContext) -> str:
    """Heuristically rewrite string-literal URLs in a script.

    Only literals are seen: ``fetch(base + "/x")`` or template strings with
    substitutions are left as they are.
    """
    if not text or len(text) > context.max_bytes:
        return text

    def proxify_literal(reference: str) -> str:
        if is_on_origin(reference, context.origin) or is_excluded(reference):
            return reference
        return context.proxify(reference)

    def replace_call(match: re.Match) -> str:
        reference = match.group("url")
        if JS_UNSAFE_LITERAL_RE.search(reference):
            return match.group(0)
        return _splice(match, "url", proxify_literal(reference))

    def replace_import_scripts(match: re.Match) -> str:
        arguments = []
        for argument in match.group("args").split(","):
            literal = JS_IMPORT_ARG_RE.match(argument)
            if literal is None or "${" in literal.group(3):
                arguments.append(argument)
                continue
            lead, quote_char, reference, trail = literal.groups()
            arguments.append(f"{lead}{quote_char}{proxify_literal(reference)}{quote_char}{trail}")
        return _splice(match, "args", ",".join(arguments))

    def replace_source_map(match: re.Match) -> str:
        return _splice(match, "url", proxify_literal(match.group("url")))

    def replace_literal(match: re.Match) -> str:
        # Operands of a string concatenation are fragments, not URLs.
        source = match.string
        if JS_CONCAT_BEFORE_RE.search(source, max(0, match.start() - 16), match.start()):
            return match.group(0)
        if JS_CONCAT_AFTER_RE.match(source, match.end()):
            return match.group(0)
        return replace_call(match)

    passes = (
        (JS_FETCH_RE, replace_call),
        (JS_IMPORT_RE, replace_call),
        (JS_IMPORT_SCRIPTS_RE, replace_import_scripts),
        (JS_XHR_OPEN_RE, replace_call),
        (JS_WORKER_RE, replace_call),
        (JS_LOCATION_RE, replace_call),
        (JS_LOCATION_CALL_RE, replace_call),
        (JS_SERVICE_WORKER_RE, replace_call),
        (JS_SOURCE_MAP_RE, replace_source_map),
        (JS_GENERIC_RE, replace_literal),
    )
    rewritten = text
    try:
        for pattern, replacement in passes:
            rewritten = pattern.sub(replacement, rewritten)
    except Exception as exc:
        logger.exception("JS rewrite failed for %s: %s", context.base, exc)
        return text
    return rewritten


# ------------------------------------------------------------------------------
# JSON
# ------------------------------------------------------------------------------

def _rewrite_json_value(value, context: RewriteContext):
    if isinstance(value, dict):
        return {key: _rewrite_json_value(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [_rewrite_json_value(item, context) for item in value]
    if isinstance(value, str) and URL_SHAPED_RE.match(value) and not is_excluded(value):
        return context.proxify(value)
    return value


def rewrite_json(text: str, context: RewriteContext) -> str:
    """Proxify URL-shaped string leaves of a JSON document; malformed input is returned as-is."""
    if not text or len(text) > context.max_bytes:
        return text
    try:
        document = json.loads(text)
    except ValueError:
        return text
    try:
        rewritten = _rewrite_json_value(document, context)
    except RecursionError:
        logger.warning("JSON document from %s is nested too deeply to rewrite", context.base)
        return text
    if rewritten == document:
        return text
    return json.dumps(rewritten, ensure_ascii=False, separators=(",", ":"))


def rewrite_import_map(text: str, context: RewriteContext) -> str:
    try:
        document = json.loads(text)
    except ValueError:
        return text
    if not isinstance(document, dict):
        return text

    def proxify_mapping(mapping):
        if not isinstance(mapping, dict):
            return mapping
        return {
            key: context.proxify(value) if isinstance(value, str) else value
            for key, value in mapping.items()
        }

    if "imports" in document:
        document["imports"] = proxify_mapping(document["imports"])
    scopes = document.get("scopes")
    if isinstance(scopes, dict):
        document["scopes"] = {scope: proxify_mapping(mapping) for scope, mapping in scopes.items()}
    # Escaped output stays valid inside a <script> in any document charset.
    return json.dumps(document, indent=2)


TEXT_ENGINES: Dict[str, Callable[[str, RewriteContext], str]] = {
    "css": rewrite_css,
    "js": rewrite_js,
    "json": rewrite_json,
}


def rewrite_text_body(kind: str, body: bytes, context: RewriteContext, content_type: Optional[str]) -> bytes:
    """Run a buffered engine over ``body``; bytes come back untouched when nothing changed."""
    if len(body) > context.max_bytes:
        return body
    charset = normalize_charset(charset_from_content_type(content_type))
    text = body.decode(charset, "surrogateescape")
    rewritten = TEXT_ENGINES[kind](text, context)
    if rewritten == text:
        return body
    try:
        return rewritten.encode(charset, "surrogateescape")
    except UnicodeEncodeError as exc:
        logger.warning("Leaving %s body from %s unchanged: %s", kind, context.base, exc)
        return body


# ------------------------------------------------------------------------------
# HTML
# ------------------------------------------------------------------------------

URL = "url"
SRCSET = "srcset"
REFRESH = "refresh"
ACTION = "action"
BASE = "base"

MEDIA_ELEMENTS = ("img", "video", "audio", "source", "track", "iframe", "frame", "embed", "object", "input")

ATTRIBUTE_RULES: Dict[Tuple[str, str], str] = {
    ("a", "href"): URL,
    ("area", "href"): URL,
    ("link", "href"): URL,
    ("link", "imagesrcset"): SRCSET,
    ("script", "src"): URL,
    ("form", "action"): ACTION,
    ("button", "formaction"): ACTION,
    ("input", "formaction"): ACTION,
    ("object", "data"): URL,
    ("meta", "content"): REFRESH,
    ("base", "href"): BASE,
}
for _element in MEDIA_ELEMENTS:
    for _attribute in ("src", "poster", "data-src"):
        ATTRIBUTE_RULES[(_element, _attribute)] = URL
    for _attribute in ("srcset", "data-srcset"):
        ATTRIBUTE_RULES[(_element, _attribute)] = SRCSET

INTEGRITY_ELEMENTS = {"link", "script"}
SCRIPT_TYPES = {"", "text/javascript", "application/javascript", "application/x-javascript",
                "application/ecmascript", "text/ecmascript", "text/jscript", "module"}

SRCSET_CANDIDATE_RE = re.compile(r"([\s,]*)(\S+)")
REFRESH_RE = re.compile(
    r"""^(?P<prefix>\s*[\d.]*\s*[;,]\s*(?:url\s*=\s*)?)(?P<quote>['"]?)(?P<url>.+?)(?P=quote)(?P<suffix>\s*)$""",
    re.IGNORECASE | re.DOTALL,
)


def rewrite_srcset(value: str, context: RewriteContext) -> str:
    """Proxify each candidate URL of a srcset, keeping descriptors and separators."""
    pieces = []
    pos = 0
    while True:
        match = SRCSET_CANDIDATE_RE.match(value, pos)
        if match is None:
            pieces.append(value[pos:])
            break
        lead, url = match.groups()
        end = match.end()
        stripped = url.rstrip(",")
        if stripped != url:
            end -= len(url) - len(stripped)
            url = stripped
            descriptor_end = end
        else:
            comma = value.find(",", end)
            descriptor_end = len(value) if comma == -1 else comma
        pieces.append(lead)
        pieces.append(context.proxify(url))
        pieces.append(value[end:descriptor_end])
        pos = descriptor_end
    return "".join(pieces)


def rewrite_refresh(value: str, context: RewriteContext) -> str:
    match = REFRESH_RE.match(value)
    if match is None:
        return value
    return _splice(match, "url", context.proxify(match.group("url")))


class HTMLRewriter:
    """Streaming HTML rewriter; feed it decoded text, emit what it returns."""

    def __init__(self, context: RewriteContext) -> None:
        self.context = context
        self.target = context.base
        self.base_applied = False
        self.tokenizer = MarkupTokenizer(
            self._rewrite_tag,
            self._rewrite_raw_text,
            max_raw_text=context.max_bytes,
        )

    def feed(self, text: str) -> str:
        return self.tokenizer.feed(text)

    def close(self) -> str:
        return self.tokenizer.close()

    def _rewrite_attribute(self, tag: StartTag, name: str, rewrite: Callable[[str], str]) -> None:
        value = tag.get(name)
        if not value:
            return
        try:
            rewritten = rewrite(value)
        except Exception as exc:
            logger.warning("Leaving <%s %s=%r> unchanged: %s", tag.name, name, value, exc)
            return
        if rewritten != value:
            tag.set(name, rewritten)

    def _rewrite_tag(self, tag: StartTag) -> Optional[str]:
        context = self.context
        for name in tag.attribute_names():
            rule = ATTRIBUTE_RULES.get((tag.name, name))
            if rule == URL:
                self._rewrite_attribute(tag, name, context.proxify)
            elif rule == ACTION:
                self._rewrite_attribute(tag, name, context.proxify_path)
            elif rule == SRCSET:
                self._rewrite_attribute(tag, name, lambda value: rewrite_srcset(value, context))
            elif rule == REFRESH:
                if (tag.get("http-equiv") or "").strip().lower() == "refresh":
                    self._rewrite_attribute(tag, name, lambda value: rewrite_refresh(value, context))
            elif rule == BASE:
                self._apply_base(tag)

        if tag.has("style"):
            self._rewrite_attribute(tag, "style", lambda value: rewrite_css(value, context))
        if tag.name == "form" and not tag.has("action"):
            tag.set("action", context.proxify_path(self.target))
        if tag.name in INTEGRITY_ELEMENTS and tag.has("integrity"):
            tag.remove("integrity")
        return tag.render() if tag.modified else None

    def _apply_base(self, tag: StartTag) -> None:
        href = tag.get("href")
        if not href or self.base_applied:
            return
        resolved = resolve_reference(href, self.context.base)
        if resolved is None:
            return
        self._rewrite_attribute(tag, "href", self.context.proxify)
        self.context = self.context.with_base(resolved)
        self.base_applied = True
        logger.debug("Document base for %s set to %s", self.target, resolved)

    def _rewrite_raw_text(self, tag: StartTag, text: str) -> str:
        if tag.name == "style":
            return rewrite_css(text, self.context)
        if tag.has("src"):
            return text
        script_type = media_type(tag.get("type"))
        if script_type == "importmap":
            try:
                return rewrite_import_map(text, self.context)
            except Exception as exc:
                logger.warning("Leaving import map on %s unchanged: %s", self.target, exc)
                return text
        if script_type in SCRIPT_TYPES:
            return rewrite_js(text, self.context)
        return text


def _encode_html_fallback(exc: UnicodeError):
    # Undecodable input bytes go back out as they came in; characters the
    # document charset cannot carry become numeric character references.
    if not isinstance(exc, UnicodeEncodeError):
        raise exc
    char = exc.object[exc.start]
    if "\udc80" <= char <= "\udcff":
        return bytes([ord(char) - 0xDC00]), exc.start + 1
    return "&#%d;" % ord(char), exc.start + 1


HTML_ENCODE_ERRORS = "rewriting.html-fallback"
codecs.register_error(HTML_ENCODE_ERRORS, _encode_html_fallback)


def rewrite_html_stream(
    chunks: Iterable[bytes],
    context: RewriteContext,
    content_type: Optional[str] = None,
) -> Iterator[bytes]:
    """Rewrite an HTML byte stream chunk by chunk.

    The charset comes from a byte order mark, then the Content-Type header,
    then a ``<meta charset>`` declaration near the start of the document.
    Undecodable bytes are carried through with ``surrogateescape``.
    """
    chunks = iter(chunks)
    head = b""
    for chunk in chunks:
        head += chunk
        if len(head) >= SNIFF_BYTES:
            break

    _, bom_charset = EncodingDetector.strip_byte_order_mark(head)
    charset = (
        bom_charset
        or charset_from_content_type(content_type)
        or EncodingDetector.find_declared_encoding(head, is_html=True)
    )
    charset = normalize_charset(charset)

    decoder = codecs.getincrementaldecoder(charset)(errors="surrogateescape")
    encoder = codecs.getincrementalencoder(charset)(errors=HTML_ENCODE_ERRORS)
    rewriter = HTMLRewriter(context)

    for chunk in itertools.chain([head], chunks):
        if not chunk:
            continue
        output = rewriter.feed(decoder.decode(chunk))
        if output:
            yield encoder.encode(output)

    tail = rewriter.feed(decoder.decode(b"", final=True)) + rewriter.close()
    data = encoder.encode(tail, final=True)
    if data:
        yield data
