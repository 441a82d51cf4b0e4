"""Preview proxy — SPA fallback, 404 for assets, URL rewriting, headers, route."""
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from apps.api.database import get_db
from apps.api.exceptions import NotFoundException
from apps.api.services.preview_proxy import (
    PreviewProxy,
    RESOLVER_MARKER,
    cache_headers,
    content_type_for,
    inject_asset_resolver,
    is_asset_path,
    normalize_requested_path,
    rewrite_asset_urls,
    rewrite_html,
    rewrite_js,
)

BASE = "/preview/u1/p1"
INDEX = (
    b'<!doctype html><html><head>'
    b'<link rel="stylesheet" href="./assets/index.css">'
    b'<script type="module" src="/assets/app.js"></script>'
    b'</head><body><img src="logo.png"><a href="https://example.com">x</a></body></html>'
)


@pytest.fixture
def proxy(object_storage, s3_client) -> PreviewProxy:
    s3_client.objects["u1/p1/index.html"] = (INDEX, "text/html")
    s3_client.objects["u1/p1/assets/app.js"] = (b"const base = import.meta.env.BASE_URL;", "application/javascript")
    return PreviewProxy(object_storage, route_prefix="/preview")


@pytest.mark.asyncio
async def test_unknown_route_falls_back_to_index(proxy):
    asset = await proxy.serve("u1", "p1", "about")
    assert asset.fell_back
    assert asset.content_type == "text/html"
    assert b"<!doctype html>" in asset.body


@pytest.mark.asyncio
async def test_missing_asset_is_404_not_index(proxy):
    with pytest.raises(NotFoundException):
        await proxy.serve("u1", "p1", "assets/missing.js")


@pytest.mark.asyncio
async def test_default_path_is_index(proxy):
    asset = await proxy.serve("u1", "p1", None)
    assert not asset.fell_back
    assert asset.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
    assert asset.headers["Pragma"] == "no-cache"


@pytest.mark.asyncio
async def test_no_index_at_all_is_404(object_storage):
    proxy = PreviewProxy(object_storage)
    with pytest.raises(NotFoundException):
        await proxy.serve("u1", "empty", "about")


@pytest.mark.asyncio
async def test_html_is_rewritten_with_cache_bust_and_version(proxy):
    asset = await proxy.serve("u1", "p1", "index.html", cache_bust="123", version=2)
    html = asset.body.decode()
    assert f'href="{BASE}?path=assets%2Findex.css&t=123&v=2"' in html
    assert f'src="{BASE}?path=assets%2Fapp.js&t=123&v=2"' in html
    assert 'src="logo.png"' in html
    assert 'href="https://example.com"' in html
    # Resolver goes in before the first script tag
    assert html.index(RESOLVER_MARKER) < html.index('<script type="module"')


@pytest.mark.asyncio
async def test_js_is_rewritten(proxy):
    asset = await proxy.serve("u1", "p1", "assets/app.js")
    js = asset.body.decode()
    assert "import.meta.env.BASE_URL" not in js
    assert 'const base = "/";' in js
    assert "window.__previewAssets" in js
    assert asset.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"


@pytest.mark.asyncio
async def test_reads_from_versioned_locator(proxy, s3_client):
    s3_client.objects["u1/p1/v7/index.html"] = (b"<html><head></head><body>v7</body></html>", "text/html")
    asset = await proxy.serve("u1", "p1", "index.html", locator="u1/p1/v7")
    assert b"v7" in asset.body


def test_rewrite_is_idempotent():
    html = INDEX.decode()
    once = rewrite_html(html, BASE, "&t=1")
    twice = rewrite_html(once, BASE, "&t=1")
    assert once == twice
    assert once.count(RESOLVER_MARKER) == 1
    assert "%252F" not in twice


def test_rewrite_leaves_protocol_relative_and_absolute_urls():
    html = '<script src="//cdn.example.com/x.js"></script><img src="https://a.b/c.png">'
    assert rewrite_asset_urls(html, BASE) == html


def test_rewrite_encodes_like_encode_uri_component():
    html = "<img src='/images/hero image(1).png'>"
    assert rewrite_asset_urls(html, BASE) == f"<img src='{BASE}?path=images%2Fhero%20image(1).png'>"


def test_resolver_injected_without_scripts():
    html = "<html><head><title>x</title></head><body></body></html>"
    out = inject_asset_resolver(html, BASE)
    assert out.index(RESOLVER_MARKER) < out.index("</head>")


def test_resolver_escapes_script_close():
    out = inject_asset_resolver("<head></head>", BASE, "&t=</script>")
    assert out.count("</script>") == 1


def test_js_rewrite_prepends_resolver_once():
    once = rewrite_js("console.log(1)", BASE)
    assert rewrite_js(once, BASE) == once


def test_asset_detection_and_content_types():
    assert is_asset_path("assets/app.js")
    assert is_asset_path("fonts/Inter.WOFF2")
    assert not is_asset_path("about")
    assert not is_asset_path("blog/post.html")
    assert content_type_for("a.svg") == "image/svg+xml"
    assert content_type_for("a.webp") == "image/webp"
    assert content_type_for("index.html") == "text/html"


def test_cache_headers_by_type():
    assert cache_headers("image/png") == {"Cache-Control": "public, max-age=31536000"}
    assert cache_headers("font/woff2") == {"Cache-Control": "public, max-age=31536000"}
    assert cache_headers("text/css") == {"Cache-Control": "public, max-age=3600"}
    assert cache_headers("text/html")["Expires"] == "0"


def test_requested_path_normalization():
    assert normalize_requested_path(None) == "index.html"
    assert normalize_requested_path("/about/") == "about"
    assert normalize_requested_path("./assets/app.js") == "assets/app.js"
    with pytest.raises(NotFoundException):
        normalize_requested_path("../secrets.txt")


# ── Route ─────────────────────────────────────────────

def _override_db(client: TestClient):
    async def override_get_db():
        yield MagicMock()

    client.app.dependency_overrides[get_db] = override_get_db


def test_preview_route_spa_fallback(client: TestClient, s3_client):
    user_id, project_id = uuid.uuid4(), uuid.uuid4()
    locator = f"{user_id}/{project_id}/v1"
    s3_client.objects[f"{locator}/index.html"] = (INDEX, "text/html")
    s3_client.objects[f"{locator}/assets/app.js"] = (b"js", "application/javascript")

    from apps.api.routes import preview as preview_module
    _override_db(client)
    with patch.object(preview_module, "resolve_locator", new_callable=AsyncMock, return_value=locator):
        try:
            r = client.get(f"/preview/{user_id}/{project_id}?path=about")
            assert r.status_code == 200
            assert r.headers["content-type"].startswith("text/html")
            assert "<!doctype html>" in r.text

            r = client.get(f"/preview/{user_id}/{project_id}?path=assets/missing.js")
            assert r.status_code == 404
            assert "error" in r.json()
        finally:
            client.app.dependency_overrides.clear()


def test_preview_route_unknown_project_is_404(client: TestClient):
    from apps.api.routes import preview as preview_module
    _override_db(client)
    with patch.object(preview_module.project_repo, "get_with_active_build", new_callable=AsyncMock, return_value=None):
        try:
            r = client.get(f"/preview/{uuid.uuid4()}/{uuid.uuid4()}")
            assert r.status_code == 404
        finally:
            client.app.dependency_overrides.clear()


def test_preview_route_bad_ids_are_404(client: TestClient):
    _override_db(client)
    try:
        r = client.get("/preview/not-a-uuid/also-not")
        assert r.status_code == 404
    finally:
        client.app.dependency_overrides.clear()


def test_preview_route_unexpected_error_is_500(client: TestClient):
    from apps.api.routes import preview as preview_module
    _override_db(client)
    with patch.object(preview_module, "resolve_locator", new_callable=AsyncMock, side_effect=RuntimeError("db down")):
        try:
            r = client.get(f"/preview/{uuid.uuid4()}/{uuid.uuid4()}")
            assert r.status_code == 500
            assert r.json()["error"]["message"] == "Failed to serve preview"
        finally:
            client.app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_resolver_intercepts_src_assignment_in_html_and_js(proxy):
    for path in ("index.html", "assets/app.js"):
        body = (await proxy.serve("u1", "p1", path)).body.decode()
        # Both the property setter and setAttribute go through the resolver
        assert "Object.defineProperty(imgProto, 'src'" in body
        assert "srcDescriptor.set.call(this, resolveAssetUrl(value))" in body
        assert "Element.prototype.setAttribute = function" in body
        assert "value = resolveAssetUrl(value);" in body
        assert body.count("window.__previewAssets = {") == 1
