import json
import pathlib
import sys

from bs4 import BeautifulSoup

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import rewriting

ORIGIN = "https://proxy.test"
TARGET = "https://ex.com/p/index.html"


def build_context(max_bytes=rewriting.DEFAULT_MAX_REWRITE_BYTES):
    return rewriting.RewriteContext(base=TARGET, origin=ORIGIN, max_bytes=max_bytes)


def proxied(url):
    return rewriting.proxify(url, url, ORIGIN)


def rewrite(document, chunks=None, context=None):
    rewriter = rewriting.HTMLRewriter(context or build_context())
    pieces = chunks if chunks is not None else [document]
    output = "".join(rewriter.feed(piece) for piece in pieces)
    return output + rewriter.close()


def test_srcset_candidates_are_proxified_independently():
    output = rewrite('<img src="a.jpg" srcset="a.jpg 1x, b.jpg 2x">')

    soup = BeautifulSoup(output, "html.parser")
    assert soup.img["src"] == proxied("https://ex.com/p/a.jpg")
    assert soup.img["srcset"] == "%s 1x, %s 2x" % (
        proxied("https://ex.com/p/a.jpg"),
        proxied("https://ex.com/p/b.jpg"),
    )


def test_srcset_with_widths_and_no_spaces():
    value = rewriting.rewrite_srcset("/s.jpg 480w,/l.jpg 1024w", build_context())

    assert value == "%s 480w,%s 1024w" % (proxied("https://ex.com/s.jpg"), proxied("https://ex.com/l.jpg"))


def test_link_and_anchor_attributes():
    output = rewrite(
        '<a href="/about#team">About</a><a href="#top">Top</a>'
        '<link rel="stylesheet" href="css/site.css"><a href="mailto:x@ex.com">Mail</a>'
    )

    soup = BeautifulSoup(output, "html.parser")
    anchors = soup.find_all("a")
    assert anchors[0]["href"] == proxied("https://ex.com/about") + "#team"
    assert anchors[1]["href"] == "#top"
    assert anchors[2]["href"] == "mailto:x@ex.com"
    assert soup.link["href"] == proxied("https://ex.com/p/css/site.css")


def test_integrity_is_removed_from_scripts_and_links():
    output = rewrite(
        '<script src="/app.js" integrity="sha384-abc" crossorigin="anonymous"></script>'
        '<link rel="stylesheet" href="/s.css" integrity="sha384-def">'
    )

    soup = BeautifulSoup(output, "html.parser")
    assert not soup.script.has_attr("integrity")
    assert not soup.link.has_attr("integrity")
    assert soup.script["crossorigin"] == "anonymous"
    assert soup.script["src"] == proxied("https://ex.com/app.js")


def test_form_without_action_posts_back_through_the_proxy():
    output = rewrite('<form method="post"><input name="q"></form><form action="/search"></form>')

    forms = BeautifulSoup(output, "html.parser").find_all("form")
    assert forms[0]["action"] == ORIGIN + "/" + TARGET
    assert forms[1]["action"] == ORIGIN + "/https://ex.com/search"


def test_get_form_action_keeps_the_target_in_the_path():
    output = rewrite(
        '<form method="get" action="results?page=1#top"><input name="q">'
        '<button formaction="/alt">Go</button></form>'
    )

    soup = BeautifulSoup(output, "html.parser")
    assert soup.form["action"] == ORIGIN + "/https://ex.com/p/results?page=1"
    assert soup.button["formaction"] == ORIGIN + "/https://ex.com/alt"
    assert "?u=" not in soup.form["action"]


def test_meta_refresh_url_is_proxified():
    output = rewrite('<meta http-equiv="refresh" content="5; url=/next"><meta name="x" content="/not-a-link">')

    metas = BeautifulSoup(output, "html.parser").find_all("meta")
    assert metas[0]["content"] == "5; url=%s" % proxied("https://ex.com/next")
    assert metas[1]["content"] == "/not-a-link"


def test_inline_style_attribute_and_element():
    output = rewrite(
        '<div style="background:url(/bg.png)"></div>'
        "<style>.a { background: url('x.png') }</style>"
    )

    soup = BeautifulSoup(output, "html.parser")
    assert soup.div["style"] == "background:url(%s)" % proxied("https://ex.com/bg.png")
    assert soup.style.string == ".a { background: url('%s') }" % proxied("https://ex.com/p/x.png")


def test_inline_scripts_by_type():
    output = rewrite(
        '<script>fetch("/api/items")</script>'
        '<script type="module">import("/m.js")</script>'
        '<script type="text/template">"/tpl"</script>'
    )

    scripts = BeautifulSoup(output, "html.parser").find_all("script")
    assert scripts[0].string == 'fetch("%s")' % proxied("https://ex.com/api/items")
    assert scripts[1].string == 'import("%s")' % proxied("https://ex.com/m.js")
    assert scripts[2].string == '"/tpl"'


def test_import_map_entries_are_proxified():
    output = rewrite(
        '<script type="importmap">{"imports":{"lib":"/js/lib.js"},'
        '"scopes":{"/admin/":{"lib":"https://cdn.ex.com/lib2.js"}}}</script>'
    )

    document = json.loads(BeautifulSoup(output, "html.parser").script.string)
    assert document["imports"]["lib"] == proxied("https://ex.com/js/lib.js")
    assert document["scopes"]["/admin/"]["lib"] == proxied("https://cdn.ex.com/lib2.js")


def test_base_href_changes_resolution_for_later_elements():
    output = rewrite(
        '<a href="before.html">x</a><base href="https://cdn.ex.com/assets/">'
        '<base href="https://ignored.ex.com/"><img src="logo.png">'
    )

    soup = BeautifulSoup(output, "html.parser")
    assert soup.a["href"] == proxied("https://ex.com/p/before.html")
    bases = soup.find_all("base")
    assert bases[0]["href"] == proxied("https://cdn.ex.com/assets/")
    assert bases[1]["href"] == "https://ignored.ex.com/"
    assert soup.img["src"] == proxied("https://cdn.ex.com/assets/logo.png")


def test_document_without_references_is_byte_identical():
    document = (
        "<!DOCTYPE html>\n<html lang=en><head><meta charset=utf-8><title>Plain & simple</title>"
        "<!-- <a href='/hidden'> --></head><body class='x'>"
        "<p>1 < 2 and <em>emphasis</em></p><textarea><img src=raw.png></textarea>"
        "<script>var x = 1;</script></body></html>"
    )

    assert rewrite(document) == document
    assert rewrite(document, chunks=list(document)) == document


def test_rewritten_output_does_not_depend_on_chunking():
    document = (
        '<html><body><a href="/one">1</a><img srcset="a.jpg 1x, b.jpg 2x">'
        "<script>fetch('/api')</script><style>a{background:url(/x.png)}</style></body></html>"
    )

    whole = rewrite(document)
    split = rewrite(document, chunks=[document[i:i + 7] for i in range(0, len(document), 7)])

    assert split == whole
    assert proxied("https://ex.com/api") in whole


def test_stream_uses_content_type_charset():
    body = '<p>caf\xe9</p><a href="/x">x</a>'.encode("latin-1")

    output = b"".join(
        rewriting.rewrite_html_stream([body], build_context(), "text/html; charset=iso-8859-1")
    )

    text = output.decode("latin-1")
    assert "<p>caf\xe9</p>" in text
    assert proxied("https://ex.com/x") in text


def test_stream_sniffs_meta_charset():
    body = b'<meta charset="windows-1252"><p>\x93quoted\x94</p>'

    output = b"".join(rewriting.rewrite_html_stream([body], build_context()))

    assert output == body


def test_stream_preserves_undecodable_bytes_and_split_characters():
    body = "<p>été</p>".encode("utf-8") + b"\xff<a href='/y'>y</a>"
    chunks = [body[i:i + 5] for i in range(0, len(body), 5)]

    output = b"".join(rewriting.rewrite_html_stream(chunks, build_context(), "text/html"))

    assert output.startswith("<p>été</p>".encode("utf-8") + b"\xff")
    assert proxied("https://ex.com/y").encode("ascii") in output


def test_media_and_embedded_content_references():
    output = rewrite(
        '<video poster="/p.jpg" data-src="v.mp4"><track src="subs.vtt"></video>'
        '<img data-src="lazy.png" data-srcset="a.png 1x, b.png 2x">'
        '<embed src="/f.swf"><object data="/o.pdf"></object>'
    )

    soup = BeautifulSoup(output, "html.parser")
    assert soup.video["poster"] == proxied("https://ex.com/p.jpg")
    assert soup.video["data-src"] == proxied("https://ex.com/p/v.mp4")
    assert soup.track["src"] == proxied("https://ex.com/p/subs.vtt")
    assert soup.img["data-src"] == proxied("https://ex.com/p/lazy.png")
    assert soup.img["data-srcset"] == "%s 1x, %s 2x" % (
        proxied("https://ex.com/p/a.png"),
        proxied("https://ex.com/p/b.png"),
    )
    assert soup.embed["src"] == proxied("https://ex.com/f.swf")
    assert soup.object["data"] == proxied("https://ex.com/o.pdf")


def test_characters_outside_the_document_charset_become_references():
    document = (
        '<div style="font-family:\'&#x4e2d;\';background:url(/bg.png)">caf\xe9</div>'
    ).encode("iso-8859-1")
    context = build_context()

    output = b"".join(rewriting.rewrite_html_stream(iter([document]), context, "text/html; charset=iso-8859-1"))

    assert b"&#20013;" in output
    assert proxied("https://ex.com/bg.png").encode("ascii") in output
    assert b"caf\xe9" in output
