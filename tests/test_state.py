"""
Flag store + session/order registry unit tests.
"""
import re

import pytest
from prometheus_client import REGISTRY

from dem_playground.main import (
    Flags, Store, route_label, BadRequest, Unauthorized, NotFound, InjectedFailure,
    gen_id, b36, health, product_get, parse_kv, flat_query,
)


DEFAULTS = {"slowMode": False, "slowMs": 2000, "failMode": False, "jsErrorMode": False, "version": "test-v"}


# ── flags ─────────────────────────────────────────────────────────────────────

class TestFlags:
    def test_defaults(self, flags):
        assert flags.get() == DEFAULTS

    def test_get_is_a_copy(self, flags):
        flags.get()["failMode"] = True
        assert flags.get()["failMode"] is False

    def test_valid_patch_changes_only_named_fields(self, flags):
        out = flags.update({"slowMode": True, "slowMs": 500})
        assert out == dict(DEFAULTS, slowMode=True, slowMs=500)
        assert flags.get() == out

    def test_every_bool_flag(self, flags):
        out = flags.update({"slowMode": True, "failMode": True, "jsErrorMode": True})
        assert out["slowMode"] and out["failMode"] and out["jsErrorMode"]

    def test_slow_ms_out_of_range_ignored(self, flags):
        assert flags.update({"slowMs": 15000})["slowMs"] == 2000
        assert flags.update({"slowMs": -1})["slowMs"] == 2000

    def test_slow_ms_bounds_inclusive(self, flags):
        assert flags.update({"slowMs": 0})["slowMs"] == 0
        assert flags.update({"slowMs": 10000})["slowMs"] == 10000

    def test_slow_ms_accepts_float(self, flags):
        assert flags.update({"slowMs": 250.5})["slowMs"] == 250.5

    @pytest.mark.parametrize("v", ["500", None, True, [1], float("nan")])
    def test_slow_ms_wrong_type_ignored(self, flags, v):
        assert flags.update({"slowMs": v})["slowMs"] == 2000

    @pytest.mark.parametrize("v", ["yes", 1, 0, None, "true"])
    def test_bool_flag_wrong_type_ignored(self, flags, v):
        assert flags.update({"slowMode": v})["slowMode"] is False

    def test_bad_field_does_not_block_good_one(self, flags):
        out = flags.update({"slowMode": "yes", "failMode": True})
        assert out["slowMode"] is False
        assert out["failMode"] is True

    def test_unknown_and_version_ignored(self, flags):
        assert flags.update({"version": "v9", "bogus": 1}) == DEFAULTS

    def test_same_value_is_not_a_change(self, flags):
        labels = {"flag": "failMode"}
        before = REGISTRY.get_sample_value("dem_toggles_total", labels) or 0
        flags.update({"failMode": False})
        assert (REGISTRY.get_sample_value("dem_toggles_total", labels) or 0) == before
        flags.update({"failMode": True})
        assert REGISTRY.get_sample_value("dem_toggles_total", labels) == before + 1

    @pytest.mark.parametrize("patch", [None, [], "x", 3])
    def test_non_dict_patch_is_empty(self, flags, patch):
        assert flags.update(patch) == DEFAULTS


# ── health ────────────────────────────────────────────────────────────────────

class TestHealth:
    def test_ok(self, flags):
        r = health(flags)
        assert r["ok"] is True
        assert r["version"] == "test-v"
        assert r["latencyMs"] >= 0

    def test_fail_mode(self, flags):
        flags.update({"failMode": True})
        with pytest.raises(InjectedFailure) as ei:
            health(flags)
        p = ei.value.payload()
        assert ei.value.code == 500
        assert p["ok"] is False
        assert p["error"] == "Server error (fail mode enabled)"
        assert p["version"] == "test-v"
        assert set(p) == {"ok", "error", "version", "ts", "latencyMs"}

    def test_slow_mode_latency(self, flags):
        flags.update({"slowMode": True, "slowMs": 100})
        assert health(flags)["latencyMs"] >= 100


# ── ids ───────────────────────────────────────────────────────────────────────

class TestIds:
    def test_b36(self):
        assert b36(0) == "0"
        assert b36(35) == "z"
        assert b36(36) == "10"

    def test_shape(self):
        assert re.fullmatch(r"ord_[0-9a-z]+_[0-9a-z]{6}", gen_id("ord"))

    def test_unique(self):
        ids = {gen_id("x") for _ in range(2000)}
        assert len(ids) == 2000


# ── sessions / orders ─────────────────────────────────────────────────────────

class TestStore:
    def test_session_roundtrip(self, store):
        s = store.session_init()
        assert s["expiresIn"] == 60
        assert s["sessionId"].startswith("sess_")
        assert len(s["token"]) == 16
        assert store.session_validate(s["sessionId"], s["token"]) == {"valid": True, "sessionId": s["sessionId"]}

    def test_session_wrong_token(self, store):
        s = store.session_init()
        with pytest.raises(Unauthorized):
            store.session_validate(s["sessionId"], s["token"] + "x")

    def test_session_token_of_other_session(self, store):
        a, b = store.session_init(), store.session_init()
        with pytest.raises(Unauthorized):
            store.session_validate(a["sessionId"], b["token"])

    def test_session_unknown(self, store):
        with pytest.raises(Unauthorized):
            store.session_validate("sess_nope", "tok")

    @pytest.mark.parametrize("sid,tok", [("", "t"), ("s", ""), (None, None)])
    def test_session_missing_params(self, store, sid, tok):
        with pytest.raises(BadRequest) as ei:
            store.session_validate(sid, tok)
        assert ei.value.code == 400

    def test_order_roundtrip(self, store):
        items = [{"productId": "prod-2", "qty": 3}]
        r = store.order_add(items)
        assert r["status"] == "created"
        o = store.order_get(r["orderId"])
        assert o["orderId"] == r["orderId"]
        assert o["items"] == items
        assert o["status"] == "created"
        assert isinstance(o["createdAt"], int)

    @pytest.mark.parametrize("items", [None, "x", {"productId": "prod-2"}])
    def test_order_default_items(self, store, items):
        o = store.order_get(store.order_add(items)["orderId"])
        assert o["items"] == [{"productId": "prod-1", "qty": 1}]

    def test_order_empty_list_kept(self, store):
        o = store.order_get(store.order_add([])["orderId"])
        assert o["items"] == []

    def test_order_missing(self, store):
        with pytest.raises(NotFound):
            store.order_get("nonexistent")

    def test_entries_accumulate(self, store):
        for _ in range(5):
            store.session_init()
            store.order_add()
        assert len(store.sessions) == 5
        assert len(store.orders) == 5


# ── misc helpers ──────────────────────────────────────────────────────────────

def test_product_get():
    assert product_get("prod-2")["name"] == "Widget B"
    with pytest.raises(NotFound):
        product_get("prod-9")

def test_parse_kv():
    assert parse_kv(["failMode=true", "slowMs=500", "version=v2"]) == {
        "failMode": True, "slowMs": 500, "version": "v2"}

def test_flat_query():
    assert flat_query({"a": ["1"], "b": ["1", "2"]}) == {"a": "1", "b": ["1", "2"]}

def test_route_label():
    assert route_label("/api/health") == "/api/health"
    assert route_label("/checkout") == "/checkout"
    assert route_label("/api/orders/ord_1_abc") == "/api/orders/:orderId"
    assert route_label("/api/products/prod-1") == "/api/products/:id"
    assert route_label("/app.js") == "/static"
    assert route_label("/api/x.js") == "other"
    assert route_label("/whatever/123") == "other"
