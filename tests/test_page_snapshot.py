import base64
import time

import pytest
from bs4 import BeautifulSoup

from app.services.archivers.page_snapshot import PageSnapshot, snapshot_filename
from app.services.exceptions import (
    ContentTooLargeError,
    DownloadError,
    EmptyContentError,
    ErrorKind,
)

PAGE = "https://site.test/blog/post.html"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24

HTML = """<html><head>
<base href="https://site.test/blog/">
<link rel="stylesheet" href="style.css">
<script src="/app.js"></script>
</head><body onload="boot()">
<img src="img/a.png" srcset="img/a.png 1x, img/b.png 2x">
<a href="../about">About</a>
</body></html>"""


def make_tool(http, **kwargs):
    kwargs.setdefault("timeout", 5)
    kwargs.setdefault("max_bytes", 1024 * 1024)
    kwargs.setdefault("max_concurrent_downloads", 2)
    for flag in ("disable_js", "disable_css", "disable_embeds", "disable_medias"):
        kwargs.setdefault(flag, False)
    return PageSnapshot(session=http, **kwargs)


@pytest.fixture()
def site(http, make_response):
    http.add(
        "GET",
        PAGE,
        make_response(
            body=HTML.encode("utf-8"),
            headers={"Content-Type": "text/html; charset=utf-8"},
            url=PAGE,
        ),
    )
    http.add(
        "GET",
        "https://site.test/blog/style.css",
        make_response(
            body=b"@import 'extra.css'; body { background: url(bg.png); }",
            headers={"Content-Type": "text/css"},
        ),
    )
    http.add(
        "GET",
        "https://site.test/blog/extra.css",
        make_response(body=b"h1 { color: red; }", headers={"Content-Type": "text/css"}),
    )
    http.add(
        "GET",
        "https://site.test/app.js",
        make_response(body=b"console.log(1);", headers={"Content-Type": "application/javascript"}),
    )
    for name in ("bg.png", "img/a.png"):
        http.add(
            "GET",
            f"https://site.test/blog/{name}",
            make_response(body=PNG, headers={"Content-Type": "image/png"}),
        )
    return http


def _decode_data_uri(value):
    header, _, payload = value.partition(",")
    assert header.endswith(";base64")
    return base64.b64decode(payload).decode("utf-8")


def test_snapshot_inlines_resources(site):
    archived = make_tool(site).archive(PAGE, "text/html")

    assert archived.filename == "post.snapshot.html"
    assert archived.mime_type == "text/html"
    soup = BeautifulSoup(archived.data.decode("utf-8"), "html.parser")
    assert soup.find("base") is None

    img = soup.find("img")
    assert img["src"].startswith("data:image/png;base64,")
    assert "https://site.test/blog/img/b.png 2x" in img["srcset"]
    assert soup.find("script")["src"].startswith("data:application/javascript;base64,")
    assert soup.find("a")["href"] == "https://site.test/about"

    css = _decode_data_uri(soup.find("link")["href"])
    assert "data:image/png;base64," in css
    assert '@import url("data:text/css;base64,' in css


def test_missing_resources_stay_absolute(site):
    archived = make_tool(site).archive(PAGE, "text/html")
    assert b"https://site.test/blog/img/b.png" in archived.data


def test_disable_js_strips_scripts_and_handlers(site):
    archived = make_tool(site, disable_js=True).archive(PAGE, "text/html")
    soup = BeautifulSoup(archived.data.decode("utf-8"), "html.parser")
    assert soup.find("script") is None
    assert "onload" not in soup.find("body").attrs
    assert all(call.url != "https://site.test/app.js" for call in site.calls)


def test_disable_medias_drops_images(site):
    archived = make_tool(site, disable_medias=True).archive(PAGE, "text/html")
    assert BeautifulSoup(archived.data, "html.parser").find("img") is None


def test_page_status_error(http, make_response):
    http.add("GET", PAGE, make_response(status_code=404, url=PAGE))
    with pytest.raises(DownloadError) as excinfo:
        make_tool(http).archive(PAGE, "text/html")
    assert excinfo.value.kind is ErrorKind.HTTP_CLIENT


def test_empty_page_is_rejected(http, make_response):
    http.add("GET", PAGE, make_response(body=b"", url=PAGE))
    with pytest.raises(EmptyContentError):
        make_tool(http).archive(PAGE, "text/html")


def test_exhausted_budget_is_a_timeout(site):
    with pytest.raises(DownloadError) as excinfo:
        make_tool(site, timeout=0).archive(PAGE, "text/html")
    assert excinfo.value.kind is ErrorKind.TIMEOUT


def test_output_over_ceiling_is_rejected(site):
    with pytest.raises(ContentTooLargeError):
        make_tool(site, max_bytes=len(HTML) + 10).archive(PAGE, "text/html")


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://x.test/docs/page.html?q=1", "page.snapshot.html"),
        ("https://x.test/docs/old.htm", "old.snapshot.html"),
        ("https://x.test/docs/guide", "guide.snapshot.html"),
        ("https://x.test/", "index.snapshot.html"),
        ("https://x.test", "index.snapshot.html"),
    ],
)
def test_snapshot_filename(url, expected):
    assert snapshot_filename(url) == expected


def test_slow_resource_stops_reading_at_the_deadline(site, make_dripping_response):
    slow_script = make_dripping_response(
        body=b"x" * 400,
        interval=0.02,
        headers={"Content-Type": "application/javascript"},
    )
    site.routes[("GET", "https://site.test/app.js")] = [slow_script]

    started = time.monotonic()
    archived = make_tool(site, timeout=0.5).archive(PAGE, "text/html")
    assert time.monotonic() - started < 1.5

    soup = BeautifulSoup(archived.data.decode("utf-8"), "html.parser")
    assert soup.find("script")["src"] == "https://site.test/app.js"

    time.sleep(0.1)
    sent_after_return = slow_script.sent
    time.sleep(0.3)
    assert slow_script.sent == sent_after_return
    assert slow_script.sent < len(slow_script.body)


def test_resources_share_one_byte_budget(http, make_response):
    page = (
        b'<html><body><img src="https://site.test/a.png">'
        b'<img src="https://site.test/b.png"></body></html>'
    )
    http.add("GET", PAGE, make_response(body=page, headers={"Content-Type": "text/html"}, url=PAGE))
    image = b"\x89PNG\r\n\x1a\n" + b"\x00" * 1192
    for name in ("a.png", "b.png"):
        http.add(
            "GET",
            f"https://site.test/{name}",
            make_response(body=image, headers={"Content-Type": "image/png"}),
        )

    archived = make_tool(http, max_bytes=2000, max_concurrent_downloads=1).archive(
        PAGE, "text/html"
    )

    sources = [img["src"] for img in BeautifulSoup(archived.data, "html.parser").find_all("img")]
    assert sum(src.startswith("data:image/png;base64,") for src in sources) == 1
    assert sum(src.startswith("https://site.test/") for src in sources) == 1
