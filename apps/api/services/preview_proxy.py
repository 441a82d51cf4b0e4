"""Preview proxy — serves a stored build under /preview/{user}/{project}.

Builds are compiled with a relative base, but a single-page app still emits
absolute references ("/assets/index-3f2a.js", "/logo.png") and sets image
sources at runtime. Without rebuilding, the proxy makes the artifact work
under a dynamic prefix by:

- rewriting href/src attributes in HTML to "{base}?path=<encoded>{&t,&v}"
- registering a small asset resolver in the page (`window.__previewAssets`)
  that routes image sources set from script through the same URL scheme
  before the browser requests them
- rewriting the bundler's runtime base token in JS bundles
- falling back to the entry document for unknown non-asset paths (SPA routing)

Missing assets stay 404s: falling back for "/assets/missing.js" would turn a
broken build into a blank page.
"""

import json
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from urllib.parse import quote

from apps.api.exceptions import NotFoundException, StorageError
from apps.api.services.object_storage import ObjectNotFound, ObjectStorage

logger = logging.getLogger(__name__)

ENTRY_DOCUMENT = "index.html"

ASSET_PATH_RE = re.compile(
    r"\.(js|css|json|png|jpg|jpeg|gif|svg|webp|ico|woff|woff2|ttf|eot|map)$", re.IGNORECASE
)

CONTENT_TYPES = {
    "html": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "json": "application/json",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "ico": "image/x-icon",
    "woff": "font/woff",
    "woff2": "font/woff2",
    "ttf": "font/ttf",
    "eot": "application/vnd.ms-fontobject",
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# Attribute values already proxied, protocol-relative, or absolute URLs are left alone
_ATTR_RE = re.compile(r"""\b(href|src)=(["'])([^"']*)\2""", re.IGNORECASE)
_FIRST_SCRIPT_RE = re.compile(r"<script\b", re.IGNORECASE)
_HEAD_CLOSE_RE = re.compile(r"</head>", re.IGNORECASE)
_BASE_URL_TOKEN_RE = re.compile(r"import\.meta\.env\.BASE_URL")

RESOLVER_MARKER = "data-preview-assets"
JS_RESOLVER_MARKER = "/* preview-assets */"


@dataclass
class PreviewAsset:
    body: bytes
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)
    fell_back: bool = False


def is_asset_path(path: str) -> bool:
    return bool(ASSET_PATH_RE.search(path))


def content_type_for(path: str) -> str:
    ext = PurePosixPath(path).suffix.lower().lstrip(".")
    if ext in CONTENT_TYPES:
        return CONTENT_TYPES[ext]
    guess, _ = mimetypes.guess_type(PurePosixPath(path).name)
    return guess or "application/octet-stream"


def cache_headers(content_type: str) -> dict[str, str]:
    if content_type == "text/html" or "javascript" in content_type:
        return dict(NO_CACHE_HEADERS)
    if content_type.startswith("image/") or content_type.startswith("font/"):
        return {"Cache-Control": "public, max-age=31536000"}
    return {"Cache-Control": "public, max-age=3600"}


def normalize_requested_path(path: str | None) -> str:
    """"/about", "./about" and "about" are the same request. Traversal is refused."""
    value = (path or "").replace("\\", "/").strip()
    parts = [p for p in value.split("/") if p and p != "."]
    if any(p == ".." for p in parts):
        raise NotFoundException("File", value)
    return "/".join(parts) or ENTRY_DOCUMENT


def encode_asset_path(path: str) -> str:
    """Same character set JavaScript's encodeURIComponent leaves alone."""
    return quote(path, safe="-_.!~*'()")


def query_suffix(cache_bust: str | None = None, version: int | None = None) -> str:
    suffix = ""
    if cache_bust:
        suffix += f"&t={encode_asset_path(cache_bust)}"
    if version is not None:
        suffix += f"&v={version}"
    return suffix


def proxy_url(base: str, asset_path: str, suffix: str = "") -> str:
    return f"{base}?path={encode_asset_path(asset_path)}{suffix}"


def rewrite_asset_urls(html: str, base: str, suffix: str = "") -> str:
    """Route "./x" and "/x" attribute values through the proxy.

    Values that already point at the proxy base are skipped, so running this
    twice gives the same document as running it once.
    """

    def _replace(match: re.Match) -> str:
        attr, quote_char, url = match.group(1), match.group(2), match.group(3)
        if url.startswith(base) or url.startswith("//"):
            return match.group(0)
        if url.startswith("./"):
            asset_path = url[2:]
        elif url.startswith("/"):
            asset_path = url[1:]
        else:
            return match.group(0)
        return f"{attr}={quote_char}{proxy_url(base, asset_path, suffix)}{quote_char}"

    return _ATTR_RE.sub(_replace, html)


def _js_string(value: str) -> str:
    # json.dumps gives a valid JS string literal; "<" is escaped so "</script>" can't close the tag
    return json.dumps(value).replace("<", "\\u003c")


def asset_resolver_script(base: str, suffix: str = "") -> str:
    """Client-side asset resolver, registered once per page.

    Exposes window.__previewAssets.resolveAssetUrl(path). Image sources set
    from script (`img.src = ...`, `setAttribute('src', ...)`, detached
    `new Image()` included) go through it before the browser fetches
    anything. Markup inserted via innerHTML never hits those setters, so a
    MutationObserver rewrites <img> elements that arrive that way.
    """
    return (
        "(function () {\n"
        "  if (window.__previewAssets) return;\n"
        f"  var base = {_js_string(base)};\n"
        f"  var suffix = {_js_string(suffix)};\n"
        "  function resolveAssetUrl(path) {\n"
        "    if (typeof path !== 'string' || !path) return path;\n"
        "    if (path.indexOf(base) === 0 || path.indexOf('//') === 0) return path;\n"
        "    var rel;\n"
        "    if (path.indexOf('./') === 0) rel = path.slice(2);\n"
        "    else if (path.charAt(0) === '/') rel = path.slice(1);\n"
        "    else return path;\n"
        "    return base + '?path=' + encodeURIComponent(rel) + suffix;\n"
        "  }\n"
        "  var nativeSetAttribute = Element.prototype.setAttribute;\n"
        "  var imgProto = window.HTMLImageElement && HTMLImageElement.prototype;\n"
        "  var srcDescriptor = imgProto && Object.getOwnPropertyDescriptor(imgProto, 'src');\n"
        "  if (srcDescriptor && srcDescriptor.set && srcDescriptor.configurable) {\n"
        "    Object.defineProperty(imgProto, 'src', {\n"
        "      configurable: true,\n"
        "      enumerable: srcDescriptor.enumerable,\n"
        "      get: srcDescriptor.get,\n"
        "      set: function (value) { srcDescriptor.set.call(this, resolveAssetUrl(value)); }\n"
        "    });\n"
        "  }\n"
        "  Element.prototype.setAttribute = function (name, value) {\n"
        "    if (imgProto && this instanceof HTMLImageElement && String(name).toLowerCase() === 'src') {\n"
        "      value = resolveAssetUrl(value);\n"
        "    }\n"
        "    return nativeSetAttribute.call(this, name, value);\n"
        "  };\n"
        "  function fixImage(img) {\n"
        "    var current = img.getAttribute('src');\n"
        "    var resolved = resolveAssetUrl(current);\n"
        "    if (resolved !== current) nativeSetAttribute.call(img, 'src', resolved);\n"
        "  }\n"
        "  function scan(node) {\n"
        "    if (node.nodeType !== 1) return;\n"
        "    if (node.tagName === 'IMG') fixImage(node);\n"
        "    else if (node.querySelectorAll) node.querySelectorAll('img').forEach(fixImage);\n"
        "  }\n"
        "  window.__previewAssets = { base: base, resolveAssetUrl: resolveAssetUrl };\n"
        "  new MutationObserver(function (mutations) {\n"
        "    mutations.forEach(function (m) { m.addedNodes.forEach(scan); });\n"
        "  }).observe(document.documentElement, { subtree: true, childList: true });\n"
        "})();\n"
    )


def inject_asset_resolver(html: str, base: str, suffix: str = "") -> str:
    """Put the resolver before the first <script> (or at the end of <head>), once."""
    if RESOLVER_MARKER in html:
        return html
    tag = f"<script {RESOLVER_MARKER}>\n{asset_resolver_script(base, suffix)}</script>\n"
    match = _FIRST_SCRIPT_RE.search(html) or _HEAD_CLOSE_RE.search(html)
    if match is None:
        return tag + html
    return html[: match.start()] + tag + html[match.start():]


def rewrite_html(html: str, base: str, suffix: str = "") -> str:
    return inject_asset_resolver(rewrite_asset_urls(html, base, suffix), base, suffix)


def rewrite_js(js: str, base: str, suffix: str = "") -> str:
    """Pin the runtime base path to "/" and prepend the resolver (once)."""
    js = _BASE_URL_TOKEN_RE.sub('"/"', js)
    if js.startswith(JS_RESOLVER_MARKER):
        return js
    return f"{JS_RESOLVER_MARKER}\n{asset_resolver_script(base, suffix)}{js}"


class PreviewProxy:
    """Resolves, fetches and rewrites one preview request."""

    def __init__(self, storage: ObjectStorage, route_prefix: str = "/preview"):
        self.storage = storage
        self.route_prefix = route_prefix.rstrip("/")

    def base_for(self, user_id: str, project_id: str) -> str:
        return f"{self.route_prefix}/{user_id}/{project_id}"

    async def _fetch(self, key: str):
        try:
            return await self.storage.download(key)
        except StorageError as e:
            # A storage outage looks like a missing file to the browser
            logger.error("Storage read failed for %s: %s", key, e)
            raise ObjectNotFound(key) from e

    async def serve(
        self,
        user_id: str,
        project_id: str,
        requested_path: str | None = None,
        locator: str | None = None,
        cache_bust: str | None = None,
        version: int | None = None,
    ) -> PreviewAsset:
        """Resolve requested_path inside a build and return the (rewritten) body.

        locator defaults to the unversioned "{user}/{project}" prefix.
        Raises NotFoundException for anything that can't be served.
        """
        path = normalize_requested_path(requested_path)
        prefix = locator or f"{user_id}/{project_id}"

        resolved_path = path
        fell_back = False
        try:
            stored = await self._fetch(f"{prefix}/{path}")
        except ObjectNotFound:
            if is_asset_path(path):
                logger.info("Preview asset not found: %s/%s", prefix, path)
                raise NotFoundException("File", path)
            logger.debug("SPA route %s, serving %s", path, ENTRY_DOCUMENT)
            try:
                stored = await self._fetch(f"{prefix}/{ENTRY_DOCUMENT}")
            except ObjectNotFound:
                raise NotFoundException("File", path)
            resolved_path = ENTRY_DOCUMENT
            fell_back = True

        content_type = content_type_for(resolved_path)
        headers = cache_headers(content_type)
        base = self.base_for(user_id, project_id)
        suffix = query_suffix(cache_bust, version)

        body = stored.body
        if content_type == "text/html":
            body = rewrite_html(body.decode("utf-8", errors="replace"), base, suffix).encode("utf-8")
        elif "javascript" in content_type:
            body = rewrite_js(body.decode("utf-8", errors="replace"), base, suffix).encode("utf-8")

        return PreviewAsset(body=body, content_type=content_type, headers=headers, fell_back=fell_back)
