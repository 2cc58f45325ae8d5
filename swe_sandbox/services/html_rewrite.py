"""Best-effort URL rewriting for HTML and redirects served through the proxy.

Rewriting is regex based, not a DOM parse. Quoted strings that merely look
like root-relative paths (inside inline JSON, for instance) get rewritten too.
"""

from __future__ import annotations

import re
from urllib.parse import urljoin, urlsplit

PROXY_PATH = "/dev-server/proxy"
LOCAL_HOSTNAMES = ("localhost", "127.0.0.1")

_QUOTED_ROOT_PATH = re.compile(r"""(["'`])/(?!/)(?!dev-server/proxy/)([^"'`\s<>]*)\1""")
_HEAD_TAG = re.compile(r"<head\b[^>]*>", re.IGNORECASE)
_HTML_TAG = re.compile(r"<html\b[^>]*>", re.IGNORECASE)

_INTERCEPTION_SCRIPT = r"""<script data-sandbox-preview-proxy>
(function () {
  var PREFIX = "__PREFIX__";
  var LOCAL = /^https?:\/\/(?:localhost|127\.0\.0\.1):__PORT__(?=[\/?#]|$)/i;
  function rewrite(url) {
    if (typeof url !== "string") return url;
    if (LOCAL.test(url)) {
      url = url.replace(LOCAL, "") || "/";
    }
    if (url.charAt(0) === "/" && url.charAt(1) !== "/" &&
        url !== PREFIX && url.indexOf(PREFIX + "/") !== 0) {
      return PREFIX + url;
    }
    return url;
  }
  if (window.fetch) {
    var originalFetch = window.fetch;
    window.fetch = function (input, init) {
      return originalFetch.call(this, rewrite(input), init);
    };
  }
  if (window.XMLHttpRequest) {
    var originalOpen = XMLHttpRequest.prototype.open;
    XMLHttpRequest.prototype.open = function (method, url) {
      var args = Array.prototype.slice.call(arguments);
      args[1] = rewrite(url);
      return originalOpen.apply(this, args);
    };
  }
  var originalSetAttribute = Element.prototype.setAttribute;
  Element.prototype.setAttribute = function (name, value) {
    var lowered = String(name).toLowerCase();
    if (lowered === "src" || lowered === "href" || lowered === "action") {
      value = rewrite(value);
    }
    return originalSetAttribute.call(this, name, value);
  };
  [
    [window.HTMLScriptElement, "src"],
    [window.HTMLImageElement, "src"],
    [window.HTMLLinkElement, "href"],
    [window.HTMLAnchorElement, "href"],
    [window.HTMLIFrameElement, "src"],
    [window.HTMLFormElement, "action"]
  ].forEach(function (entry) {
    if (!entry[0]) return;
    var proto = entry[0].prototype;
    var descriptor = Object.getOwnPropertyDescriptor(proto, entry[1]);
    if (!descriptor || !descriptor.set) return;
    Object.defineProperty(proto, entry[1], {
      configurable: true,
      enumerable: descriptor.enumerable,
      get: descriptor.get,
      set: function (value) { descriptor.set.call(this, rewrite(value)); }
    });
  });
  ["pushState", "replaceState"].forEach(function (name) {
    var original = window.history && window.history[name];
    if (!original) return;
    window.history[name] = function (state, title, url) {
      if (url !== undefined && url !== null) url = rewrite(String(url));
      return original.call(this, state, title, url);
    };
  });
})();
</script>"""


def proxy_prefix(port: int) -> str:
    return f"{PROXY_PATH}/{port}"


def _local_ports(port: int, host_port: int | None) -> tuple[int, ...]:
    if host_port is None or host_port == port:
        return (port,)
    return (port, host_port)


def rewrite_location(location: str, target_url: str, upstream_port: int, proxy_port: int | None = None) -> str:
    """Route redirects aimed at the upstream server back through the proxy.

    A sandboxed app may redirect to either its container port or the host
    port it is reached on; both count as the upstream. Locations pointing
    anywhere else are returned unchanged.
    """
    try:
        resolved = urlsplit(urljoin(target_url, location))
        port = resolved.port
    except ValueError:
        return location
    proxy_port = proxy_port or upstream_port
    if resolved.hostname not in LOCAL_HOSTNAMES or port not in _local_ports(proxy_port, upstream_port):
        return location
    rewritten = f"{proxy_prefix(proxy_port)}{resolved.path or '/'}"
    if resolved.query:
        rewritten = f"{rewritten}?{resolved.query}"
    return rewritten


def _port_pattern(ports: tuple[int, ...]) -> str:
    if len(ports) == 1:
        return str(ports[0])
    return "(?:" + "|".join(str(p) for p in ports) + ")"


def build_interception_script(port: int, host_port: int | None = None) -> str:
    pattern = _port_pattern(_local_ports(port, host_port))
    return _INTERCEPTION_SCRIPT.replace("__PREFIX__", proxy_prefix(port)).replace("__PORT__", pattern)


def inject_head(html: str, snippet: str) -> str:
    """Insert ``snippet`` right after the opening ``<head>`` tag."""
    for pattern in (_HEAD_TAG, _HTML_TAG):
        match = pattern.search(html)
        if match:
            return html[: match.end()] + snippet + html[match.end():]
    return snippet + html


def rewrite_html(html: str, port: int, host_port: int | None = None) -> str:
    """Rewrite ``html`` served for container ``port`` (reached on ``host_port``)."""
    prefix = proxy_prefix(port)
    ports = _port_pattern(_local_ports(port, host_port))
    local_url = re.compile(
        rf"https?://(?:localhost|127\.0\.0\.1):{ports}(?![0-9])", re.IGNORECASE
    )
    html = local_url.sub(prefix, html)
    html = _QUOTED_ROOT_PATH.sub(lambda m: f"{m.group(1)}{prefix}/{m.group(2)}{m.group(1)}", html)
    # Injected last so the base tag and script are not rewritten themselves.
    injected = f'<base href="{prefix}/">' + build_interception_script(port, host_port)
    return inject_head(html, injected)
