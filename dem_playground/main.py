#!/usr/bin/env python3
"""
DEM playground: a tiny target service for RUM + synthetic monitoring demos.
- Runtime flags (slow mode, slow delay, fail mode, JS error mode) toggled over HTTP
- /api/health that honours the flags (injected latency / forced 500s)
- Session + order flow for multi-step synthetic checks
- Static product catalog, echo endpoints, an always-failing /api/error
- Faro collector config for the browser-side RUM loader
- Prometheus metrics on a separate port
- Small CLI helpers that run the synthetic checks against a live instance

Everything lives in memory and is reset on restart.
"""

import os, json, time, random, threading, signal, sys, argparse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse, parse_qs, unquote
from prometheus_client import start_http_server, Counter, Histogram, Gauge

# ---------- env / cfg ----------

def env(k, d=None):
    """Fetch an env var with a default, treat empty as missing."""
    v = os.getenv(k)
    if v is None or v == "":
        return d
    return v

APP   = env("APP", "dem-playground")
VER   = env("APP_VERSION", env("VER", "v1"))
PORT  = int(env("PORT", "3000"))
MPORT = int(env("METRICS_PORT", "9000"))

# Grafana Faro collector; empty means RUM stays disabled in the browser
COLLECTOR_URL = env("FARO_COLLECTOR_URL", "")

# Optional log file (each access is written as jsonl)
LOG_PATH = env("LOG_PATH", "")

PUBLIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "public")

SLOW_MS_MAX = 10000
SESSION_TTL_S = 60  # advertised only, never enforced

# Error spike shape, mirrored in public/app.js
SPIKE_JS_ERRORS  = 150
SPIKE_API_ERRORS = 100
SPIKE_STAGGER_MS = 25

PRODUCTS = [
    {"id": "prod-1", "name": "Widget A", "price": 9.99},
    {"id": "prod-2", "name": "Widget B", "price": 19.99},
    {"id": "prod-3", "name": "Widget C", "price": 29.99},
]

DEFAULT_ITEMS = [{"productId": "prod-1", "qty": 1}]

# ---------- metrics ----------

REQ = Counter(
    "dem_hits_total", "HTTP hits",
    ["route", "code", "method"]
)
LAT = Histogram(
    "dem_request_seconds", "HTTP latency seconds",
    ["route", "code", "method"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10)
)
INP = Gauge("dem_inprogress", "Requests in progress", ["route"])

SESSN = Gauge("dem_sessions_total", "Sessions stored")
ORDN  = Gauge("dem_orders_total", "Orders stored")

FLAG     = Gauge("dem_flag", "Runtime flag (1 on / 0 off)", ["flag"])
SLOW_MS  = Gauge("dem_slow_ms", "Injected delay in ms when slow mode is on")
TOGGLES  = Counter("dem_toggles_total", "Flag values actually changed", ["flag"])
INJECTED = Counter("dem_injected_failures_total", "Deliberate 500s", ["kind"])

# ---------- tiny log ----------

def log_line(d):
    """Write a single JSON line to stdout (and optional file)."""
    d["ts"] = d.get("ts") or int(time.time())
    s = json.dumps(d, separators=(",", ":"))
    try:
        sys.stdout.write(s + "\n")
    except Exception:
        pass
    if LOG_PATH:
        try:
            with open(LOG_PATH, "a") as f:
                f.write(s + "\n")
        except Exception:
            pass

# ---------- errors ----------

class ApiError(Exception):
    """Request-scoped failure, answered as {"error": msg} with `code`."""
    code = 500
    def __init__(self, msg):
        super().__init__(msg)
        self.msg = msg
    def payload(self):
        return {"error": self.msg}

class BadRequest(ApiError):         code = 400
class Unauthorized(ApiError):       code = 401
class NotFound(ApiError):           code = 404
class ServiceUnavailable(ApiError): code = 503

class InjectedFailure(ApiError):
    """A 500 we produce on purpose (fail mode, error spike)."""
    code = 500
    def __init__(self, msg, kind, **extra):
        super().__init__(msg)
        self.kind = kind
        self.extra = extra
    def payload(self):
        d = {"ok": False, "error": self.msg}
        d.update(self.extra)
        return d

# ---------- helpers ----------

B36 = "0123456789abcdefghijklmnopqrstuvwxyz"

def b36(n):
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(B36[r])
    return "".join(reversed(out))

def now_ms():
    return int(time.time() * 1000)

def gen_id(prefix):
    """Short id: prefix + base36 ms clock + 6 random base36 chars."""
    tail = "".join(random.choice(B36) for _ in range(6))
    return f"{prefix}_{b36(now_ms())}_{tail}"

def is_num(x):
    return isinstance(x, (int, float)) and not isinstance(x, bool)

def is_bool(x):
    return isinstance(x, bool)

def flat_query(q):
    """parse_qs gives lists; keep lists only for repeated keys."""
    return {k: (v[0] if len(v) == 1 else v) for k, v in q.items()}

# ---------- flags ----------

# field -> acceptance check for a patch value
FLAG_RULES = {
    "slowMode":    is_bool,
    "slowMs":      lambda v: is_num(v) and 0 <= v <= SLOW_MS_MAX,
    "failMode":    is_bool,
    "jsErrorMode": is_bool,
}

class Flags:
    """Runtime toggles shared by every request, guarded by a lock."""
    def __init__(self, version=VER, slow_ms=2000):
        self.lock = threading.Lock()
        self.d = {
            "slowMode": False,
            "slowMs": slow_ms,
            "failMode": False,
            "jsErrorMode": False,
            "version": version,
        }
        self._export()

    def get(self):
        with self.lock:
            return dict(self.d)

    def update(self, patch):
        """Apply the recognised, valid fields of `patch`; ignore the rest."""
        if not isinstance(patch, dict):
            patch = {}
        changed = {}
        with self.lock:
            for k, ok in FLAG_RULES.items():
                if k in patch and ok(patch[k]) and self.d[k] != patch[k]:
                    self.d[k] = patch[k]
                    changed[k] = patch[k]
            out = dict(self.d)
        for k, v in changed.items():
            TOGGLES.labels(flag=k).inc()
            log_line({"ev": "toggle", "flag": k, "v": v})
        if changed:
            self._export()
        return out

    def _export(self):
        s = self.get()
        for k in ("slowMode", "failMode", "jsErrorMode"):
            FLAG.labels(flag=k).set(1 if s[k] else 0)
        SLOW_MS.set(s["slowMs"])

# ---------- store ----------

class Store:
    """Sessions + orders, in memory only. Entries are never evicted."""
    def __init__(self):
        self.lock = threading.Lock()
        self.sessions = {}   # sessionId -> {"token", "createdAt"}
        self.orders = {}     # orderId -> order record

    # --- Sessions ---
    def session_init(self):
        sid = gen_id("sess")
        tok = gen_id("tok")[:16]
        with self.lock:
            self.sessions[sid] = {"token": tok, "createdAt": now_ms()}
            SESSN.set(len(self.sessions))
        return {"sessionId": sid, "token": tok, "expiresIn": SESSION_TTL_S}

    def session_validate(self, sid, tok):
        if not sid or not tok:
            raise BadRequest("sessionId and token required")
        with self.lock:
            s = self.sessions.get(sid)
        if not s or s["token"] != tok:
            raise Unauthorized("Invalid or expired session")
        return {"valid": True, "sessionId": sid}

    # --- Orders ---
    def order_add(self, items=None):
        if not isinstance(items, list):
            items = [dict(x) for x in DEFAULT_ITEMS]
        oid = gen_id("ord")
        o = {"orderId": oid, "items": items, "status": "created", "createdAt": now_ms()}
        with self.lock:
            self.orders[oid] = o
            ORDN.set(len(self.orders))
        return {"orderId": oid, "status": o["status"]}

    def order_get(self, oid):
        with self.lock:
            o = self.orders.get(oid)
        if o is None:
            raise NotFound("Order not found")
        return o

def product_get(pid):
    for p in PRODUCTS:
        if p["id"] == pid:
            return p
    raise NotFound("Product not found")

def faro_config():
    if not COLLECTOR_URL:
        raise ServiceUnavailable("Faro collector URL not configured")
    return {"collectorUrl": COLLECTOR_URL}

# ---------- health ----------

def health(flags):
    """Run one health probe against the current flags (may sleep)."""
    t0 = time.perf_counter()
    s = flags.get()
    if s["slowMode"]:
        time.sleep(s["slowMs"] / 1000.0)
    # fail mode is read after the delay, so a toggle during the sleep counts
    s = flags.get()
    ms = int((time.perf_counter() - t0) * 1000)
    if s["failMode"]:
        raise InjectedFailure("Server error (fail mode enabled)", "fail_mode",
                              version=s["version"], ts=now_ms(), latencyMs=ms)
    return {"ok": True, "version": s["version"], "ts": now_ms(), "latencyMs": ms}

# ---------- tiny html ----------

STATIC_TYPES = {
    ".js": "application/javascript",
    ".css": "text/css",
    ".html": "text/html",
    ".ico": "image/x-icon",
    ".svg": "image/svg+xml",
}

NAV = ('<nav><a href="/" data-testid="nav-home">Home</a> '
       '<a href="/products" data-testid="nav-products">Products</a> '
       '<a href="/checkout" data-testid="nav-checkout">Checkout</a> '
       '<a href="/status" data-testid="nav-status">Status</a> '
       '<span id="version"></span></nav>')

def html_page(title, body):
    return f"""<!doctype html>
<html><head><meta charset="utf-8"><title>{title}</title>
<link rel="stylesheet" href="/styles.css">
<script src="/faro-init.js"></script>
</head><body>{NAV}<h2>{title}</h2><div class="box">{body}</div>
<script src="/app.js"></script></body></html>"""

PAGES = {
    "/": ("DEM Playground", """
<div id="state-display"></div>
<button id="btn-toggle-slow">Toggle API Slow</button>
<label>Slow delay <input id="slow-ms" type="range" min="0" max="10000" step="100">
<span id="slow-ms-value"></span>ms</label>
<button id="btn-update-slow">Update delay</button>
<button id="btn-toggle-fail">Toggle API Fail</button>
<button id="btn-toggle-js-error-mode">Toggle JS Error Mode</button>
<button id="btn-js-error">Trigger JS Error</button>
<button id="btn-error-spike">Trigger Error Spike</button>
<button id="btn-generate-activity">Generate Activity</button>"""),
    "/checkout": ("Checkout", """
<form id="checkout-form" data-testid="checkout-form">
<input id="name" data-testid="checkout-name" placeholder="Name">
<input id="email" data-testid="checkout-email" placeholder="Email">
<button type="submit" data-testid="checkout-submit">Submit order</button>
</form>
<div id="checkout-message" data-testid="checkout-message"></div>"""),
    "/status": ("Status", """
<table>
<tr><th>Status</th><td><span id="status-ok" class="status-badge">...</span></td></tr>
<tr><th>Latency</th><td id="status-latency"></td></tr>
<tr><th>Version</th><td id="status-version"></td></tr>
<tr><th>Last check</th><td id="status-timestamp"></td></tr>
<tr><th>Last error</th><td id="status-error">None</td></tr>
</table>"""),
    "/products": ("Products", """
<ul id="products-list" data-testid="products-list"></ul>"""),
}
PAGES["/index.html"] = PAGES["/"]

def static_file(p):
    """Resolve a request path to a file under PUBLIC_DIR, or None."""
    name = os.path.normpath(p.lstrip("/"))
    if name.startswith("..") or os.path.isabs(name):
        return None
    ext = os.path.splitext(name)[1]
    if ext not in STATIC_TYPES:
        return None
    f = os.path.join(PUBLIC_DIR, name)
    if not os.path.isfile(f):
        return None
    with open(f, "rb") as fh:
        return fh.read(), STATIC_TYPES[ext]

# ---------- http ----------

API_ROUTES = {
    "/api/health", "/api/state", "/api/toggle", "/api/error",
    "/api/session/init", "/api/session/validate", "/api/products", "/api/orders",
    "/api/script/echo", "/api/faro-config",
}

def route_label(p):
    """Bounded metric label for a request path."""
    if p in PAGES or p in API_ROUTES:
        return p
    if p.startswith("/api/products/"):
        return "/api/products/:id"
    if p.startswith("/api/orders/"):
        return "/api/orders/:orderId"
    if not p.startswith("/api/") and os.path.splitext(p)[1] in STATIC_TYPES:
        return "/static"
    return "other"

def jb(o): return json.dumps(o, separators=(",", ":")).encode()

class Handler(BaseHTTPRequestHandler):
    """All routes are handled here to keep the demo in a single file."""
    flags = None     # bound to Flags instance
    s = None         # bound to Store instance

    def log_message(self, f, *a):  # silence default http.server logging
        pass

    def do_GET(self):  self._d("GET")
    def do_POST(self): self._d("POST")

    # small helpers to write JSON/text
    def _j(self, c, o, headers=None):
        b = jb(o)
        self.send_response(c)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(b)))
        if headers:
            for k, v in headers.items():
                self.send_header(k, v)
        self.end_headers()
        self.wfile.write(b)
        self._resp_code = c

    def _t(self, c, s, ct="text/plain"):
        b = s.encode() if not isinstance(s, bytes) else s
        self.send_response(c)
        self.send_header("Content-Type", ct)
        self.send_header("Content-Length", str(len(b)))
        self.end_headers()
        self.wfile.write(b)
        self._resp_code = c

    def _body(self):
        l = int(self.headers.get("Content-Length", "0") or "0")
        if l <= 0:
            return {}
        b = self.rfile.read(l)
        try:
            return json.loads(b.decode())
        except ValueError:
            return {}

    def _d(self, m):
        """Main dispatcher for all routes."""
        t0 = time.perf_counter()
        u = urlparse(self.path)
        p = u.path
        rid = self.headers.get("X-Request-Id") or str(now_ms())
        route = route_label(p)
        INP.labels(route=route).inc()
        sc = 200

        try:
            # Pages
            if p in PAGES and m == "GET":
                self._t(200, html_page(*PAGES[p]), "text/html")

            # Flags + health
            elif p == "/api/health" and m == "GET":
                self._j(200, health(self.flags))
            elif p == "/api/state" and m == "GET":
                self._j(200, self.flags.get())
            elif p == "/api/toggle" and m == "POST":
                self._j(200, self.flags.update(self._body()))
            elif p == "/api/error" and m == "GET":
                raise InjectedFailure("Error spike - intentional 500 response", "error_spike", ts=now_ms())

            # Session / order flow
            elif p == "/api/session/init" and m == "GET":
                self._j(200, self.s.session_init())
            elif p == "/api/session/validate" and m == "GET":
                q = parse_qs(u.query)
                sids = q.get("sessionId", [""])
                toks = q.get("token", [""])
                # a repeated key never names a single session
                if len(sids) > 1 or len(toks) > 1:
                    raise Unauthorized("Invalid or expired session")
                self._j(200, self.s.session_validate(sids[0], toks[0]))
            elif p == "/api/products" and m == "GET":
                self._j(200, {"products": PRODUCTS})
            elif route == "/api/products/:id" and m == "GET":
                self._j(200, product_get(unquote(p[len("/api/products/"):])))
            elif p == "/api/orders" and m == "POST":
                d = self._body()
                items = d.get("items") if isinstance(d, dict) else None
                self._j(201, self.s.order_add(items))
            elif route == "/api/orders/:orderId" and m == "GET":
                self._j(200, self.s.order_get(unquote(p[len("/api/orders/"):])))

            # Scripted-check helpers
            elif p == "/api/script/echo" and m == "GET":
                q = flat_query(parse_qs(u.query, keep_blank_values=True))
                self._j(200, {"method": "GET", "query": q, "ts": now_ms()})
            elif p == "/api/script/echo" and m == "POST":
                self._j(200, {"method": "POST", "body": self._body(), "ts": now_ms()})
            elif p == "/api/faro-config" and m == "GET":
                self._j(200, faro_config())

            else:
                # browser scripts / styles
                sf = static_file(p) if m == "GET" and not p.startswith("/api/") else None
                if sf:
                    self._t(200, sf[0], sf[1])
                else:
                    sc = 404
                    self._j(404, {"error": "not found"})

        except InjectedFailure as e:
            INJECTED.labels(kind=e.kind).inc()
            self._j(e.code, e.payload())
        except ApiError as e:
            self._j(e.code, e.payload())
        except Exception as e:
            log_line({"ev": "error", "m": m, "p": p, "err": repr(e), "rid": rid})
            self._j(500, {"error": "internal"})
        finally:
            INP.labels(route=route).dec()
            dt = max(0.0, time.perf_counter() - t0)
            rc = getattr(self, "_resp_code", sc)
            REQ.labels(route=route, code=str(rc), method=m).inc()
            LAT.labels(route=route, code=str(rc), method=m).observe(dt)
            log_line({"m": m, "p": p, "c": rc, "ms": int(dt * 1000), "rid": rid})

# ---------- serve ----------

def make_server(port=PORT, flags=None, store=None):
    """Bind the flags + store to the handler and build a threaded server."""
    Handler.flags = flags or Flags(VER)
    Handler.s = store or Store()
    srv = ThreadingHTTPServer(("", port), Handler)
    srv.daemon_threads = True
    return srv

def serve():
    """Wire flags + store + metrics + HTTP server, handle shutdown cleanly."""
    srv = make_server(PORT)

    # Prometheus exporter (separate port)
    if MPORT:
        start_http_server(MPORT)

    def stop(sig, frm):
        # shutdown() blocks until serve_forever returns, so not from this thread
        threading.Thread(target=srv.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT,  stop)
    signal.signal(signal.SIGTERM, stop)
    log_line({"ev": "start", "app": APP, "ver": VER, "port": srv.server_address[1],
              "mport": MPORT, "rum": bool(COLLECTOR_URL), "state": Handler.flags.get()})
    srv.serve_forever()
    srv.server_close()

# ---------- CLI helpers (synthetic checks) ----------

def _ok_json(r, key, want):
    try:
        return r.json().get(key) == want
    except ValueError:
        return False

def cli_health(base, secs):
    """Health + state probe loop; counts checks that passed."""
    import requests
    t0 = time.time(); n = 0; ok = 0; slow = 0
    while time.time() - t0 < secs:
        try:
            r = requests.get(base + "/api/health", timeout=15)
            if r.status_code == 200 and _ok_json(r, "ok", True):
                ok += 1
            if r.elapsed.total_seconds() > 0.5:
                slow += 1
            requests.get(base + "/api/state", timeout=3)
        except requests.RequestException:
            pass
        n += 1; time.sleep(1)
    print(json.dumps({"checks": n, "ok": ok, "slow": slow}))
    return ok == n

def cli_multi(base, n):
    """Session init -> validate -> create order -> get order, `n` times."""
    import requests
    ok = 0
    for _ in range(n):
        try:
            r = requests.get(base + "/api/session/init", timeout=3)
            if r.status_code != 200:
                continue
            ss = r.json()
            r = requests.get(base + "/api/session/validate",
                             params={"sessionId": ss["sessionId"], "token": ss["token"]}, timeout=3)
            if r.status_code != 200 or not _ok_json(r, "valid", True):
                continue
            r = requests.post(base + "/api/orders",
                              json={"items": [{"productId": "prod-1", "qty": 2}]}, timeout=3)
            if r.status_code != 201:
                continue
            oid = r.json()["orderId"]
            r = requests.get(base + "/api/orders/" + oid, timeout=3)
            if r.status_code == 200 and _ok_json(r, "status", "created") and _ok_json(r, "orderId", oid):
                ok += 1
        except requests.RequestException:
            pass
    print(json.dumps({"flows": n, "ok": ok}))
    return ok == n

def cli_navigate(base):
    """Load every page + the read-only APIs, then assert the echo."""
    import requests
    res = {}
    for p in list(PAGES) + ["/api/health", "/api/state", "/api/products"]:
        try:
            res[p] = requests.get(base + p, timeout=15).status_code
        except requests.RequestException:
            res[p] = 0
    try:
        r = requests.get(base + "/api/script/echo", params={"test": "hello"}, timeout=3)
        echo = r.json().get("query", {}).get("test") == "hello"
    except (requests.RequestException, ValueError):
        echo = False
    print(json.dumps({"pages": res, "echo": echo}))
    return echo and all(c == 200 for c in res.values())

def cli_stress(base, secs, workers=8):
    """Hammer /api/health from `workers` threads for `secs` seconds."""
    import requests
    cnt = {"n": 0, "fail": 0}
    lat = []
    lock = threading.Lock()
    t_end = time.time() + secs

    def w():
        with requests.Session() as sess:
            while time.time() < t_end:
                t0 = time.perf_counter()
                try:
                    bad = sess.get(base + "/api/health", timeout=15).status_code != 200
                except requests.RequestException:
                    bad = True
                dt = time.perf_counter() - t0
                with lock:
                    cnt["n"] += 1
                    cnt["fail"] += int(bad)
                    lat.append(dt)
                time.sleep(random.uniform(0.05, 0.2))

    ts = [threading.Thread(target=w, daemon=True) for _ in range(workers)]
    for t in ts: t.start()
    for t in ts: t.join()
    lat.sort()
    p95 = lat[int(len(lat) * 0.95) - 1] if lat else 0.0
    print(json.dumps({"reqs": cnt["n"], "fail": cnt["fail"], "p95_ms": int(p95 * 1000)}))
    return cnt["n"] > 0 and cnt["fail"] / cnt["n"] < 0.05

def cli_spike(base, n=SPIKE_API_ERRORS):
    """Server half of the error spike: `n` calls to /api/error."""
    import requests
    got = 0
    with requests.Session() as sess:
        for _ in range(n):
            try:
                if sess.get(base + "/api/error", timeout=3).status_code == 500:
                    got += 1
            except requests.RequestException:
                pass
    print(json.dumps({"spike": n, "errors": got}))
    return got == n

def parse_kv(pairs):
    """["failMode=true", "slowMs=500"] -> {"failMode": True, "slowMs": 500}"""
    out = {}
    for kv in pairs:
        k, _, v = kv.partition("=")
        try:
            out[k] = json.loads(v)
        except ValueError:
            out[k] = v
    return out

def cli_toggle(base, pairs):
    import requests
    r = requests.post(base + "/api/toggle", json=parse_kv(pairs), timeout=3)
    print(json.dumps({"state": r.json()}))
    return r.status_code == 200

# ---------- main ----------

def main(argv=None):
    ap = argparse.ArgumentParser(description="DEM playground server + synthetic checks")
    ap.add_argument("--serve",    action="store_true")
    ap.add_argument("--health",   type=int, default=0, metavar="SECS")
    ap.add_argument("--multi",    type=int, default=0, metavar="N")
    ap.add_argument("--navigate", action="store_true")
    ap.add_argument("--stress",   type=int, default=0, metavar="SECS")
    ap.add_argument("--spike",    action="store_true")
    ap.add_argument("--toggle",   nargs="+", default=[], metavar="KEY=VALUE")
    ap.add_argument("--base",     default=env("BASE_URL", f"http://localhost:{PORT}"))
    args = ap.parse_args(argv)

    checks = args.health or args.multi or args.navigate or args.stress or args.spike or args.toggle
    if args.serve or not checks:
        serve()
        return 0
    ok = True
    if args.toggle:       ok = cli_toggle(args.base, args.toggle) and ok
    if args.health > 0:   ok = cli_health(args.base, args.health) and ok
    if args.multi > 0:    ok = cli_multi(args.base, args.multi) and ok
    if args.navigate:     ok = cli_navigate(args.base) and ok
    if args.stress > 0:   ok = cli_stress(args.base, args.stress) and ok
    if args.spike:        ok = cli_spike(args.base) and ok
    return 0 if ok else 1

if __name__ == "__main__":
    sys.exit(main())
