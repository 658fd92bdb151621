import pathlib
import sys

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import rewriting

ORIGIN = "https://proxy.test"
TARGET = "https://ex.com/p/"


def build_context(max_bytes=rewriting.DEFAULT_MAX_REWRITE_BYTES):
    return rewriting.RewriteContext(base=TARGET, origin=ORIGIN, max_bytes=max_bytes)


def proxied(url):
    return rewriting.proxify(url, url, ORIGIN)


def test_fetch_literal_is_proxified():
    rewritten = rewriting.rewrite_js('fetch("/api/x")', build_context())

    assert rewritten == 'fetch("%s")' % proxied("https://ex.com/api/x")
    assert rewriting.deproxify(rewritten[7:-2]) == "https://ex.com/api/x"


def test_concatenated_url_is_left_alone():
    script = 'fetch(base + "/api/x")'

    assert rewriting.rewrite_js(script, build_context()) == script


def test_concatenation_on_either_side_is_left_alone():
    script = 'var u = "/api/" + id;\nvar v = prefix+"/items";'

    assert rewriting.rewrite_js(script, build_context()) == script


def test_call_patterns():
    script = "\n".join(
        [
            "import('/mod.js');",
            "importScripts(\"/a.js\", 'https://cdn.ex.com/b.js');",
            "xhr.open(\"GET\", \"/data\");",
            "new Worker('/w.js');",
            "location.href = '/login';",
            "window.location.assign(\"/next\");",
            "navigator.serviceWorker.register('/sw.js');",
        ]
    )

    rewritten = rewriting.rewrite_js(script, build_context())

    assert "import('%s')" % proxied("https://ex.com/mod.js") in rewritten
    assert "importScripts(\"%s\", '%s')" % (
        proxied("https://ex.com/a.js"),
        proxied("https://cdn.ex.com/b.js"),
    ) in rewritten
    assert "xhr.open(\"GET\", \"%s\")" % proxied("https://ex.com/data") in rewritten
    assert "new Worker('%s')" % proxied("https://ex.com/w.js") in rewritten
    assert "location.href = '%s'" % proxied("https://ex.com/login") in rewritten
    assert "location.assign(\"%s\")" % proxied("https://ex.com/next") in rewritten
    assert "serviceWorker.register('%s')" % proxied("https://ex.com/sw.js") in rewritten


def test_source_map_comment_resolves_against_target():
    script = "console.log(1);\n//# sourceMappingURL=app.js.map"

    rewritten = rewriting.rewrite_js(script, build_context())

    assert rewritten.endswith("//# sourceMappingURL=%s" % proxied("https://ex.com/p/app.js.map"))


def test_generic_sweep_rewrites_absolute_literals():
    script = 'const api = "https://api.ex.com/v1";'

    rewritten = rewriting.rewrite_js(script, build_context())

    assert rewritten == 'const api = "%s";' % proxied("https://api.ex.com/v1")


def test_interpolated_and_non_url_literals_are_skipped():
    script = "\n".join(
        [
            "fetch(`/api/${id}`);",
            'const label = "/ not a path";',
            "const tag = '/x<b>';",
            "const word = 'hello';",
            "const img = 'data:image/png;base64,AAA';",
        ]
    )

    assert rewriting.rewrite_js(script, build_context()) == script


def test_already_proxied_literal_is_untouched():
    script = 'fetch("%s")' % proxied("https://ex.com/api/x")

    assert rewriting.rewrite_js(script, build_context()) == script


def test_oversized_script_passes_through():
    script = 'fetch("/api/x"); fetch("/api/y");'

    assert rewriting.rewrite_js(script, build_context(max_bytes=10)) == script
