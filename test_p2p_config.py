"""
P2P configuration tests: defaults, deep merge and the per-tenant store.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from flows.p2p.config import DEFAULT_P2P_FLOW_CONFIG, P2PFlowConfigStore, deep_merge, default_flow_config, merge_config
from flows.p2p.types import STEP_ORDER, P2PStepType
from conftest import FIXED_NOW, FakeClock


class TestDefaults:

    def test_default_config(self):
        config = default_flow_config("t-1", FIXED_NOW)
        assert config.tenant_id == "t-1"
        assert [s.step_type for s in config.ordered_steps()] == STEP_ORDER
        assert config.features.enable_auto_acknowledgment is True
        assert config.features.enable_auto_payment is False
        assert config.match_tolerances.price_tolerance_percent == Decimal("2")
        assert config.settings.dead_letter_after_attempts == 5

    def test_default_is_not_shared(self):
        config = default_flow_config("t-1")
        config.features.enable_auto_payment = True
        assert DEFAULT_P2P_FLOW_CONFIG.features.enable_auto_payment is False

    def test_step_timeout_from_settings(self, monkeypatch):
        from core.config import reset_settings
        monkeypatch.setenv("P2P_STEP_TIMEOUT_MS", "5000")
        reset_settings()
        assert default_flow_config("t-1").settings.default_timeout_ms == 5000


class TestMerge:

    def test_deep_merge_normalizes_keys(self):
        merged = deep_merge({"features": {"enable_auto_payment": False, "enable_notifications": True}},
                           {"features": {"enableAutoPayment": True}})
        assert merged == {"features": {"enable_auto_payment": True, "enable_notifications": True}}

    def test_opaque_keys_are_replaced(self):
        merged = deep_merge({"metadata": {"a": 1}}, {"metadata": {"b": 2}})
        assert merged == {"metadata": {"b": 2}}

    def test_step_overrides_match_by_type(self):
        base = default_flow_config("t-1")
        merged = merge_config(base, {
            "matchTolerances": {"priceTolerancePercent": "3.5"},
            "steps": [{"stepType": "three_way_match", "timeout": 500}],
        })

        assert merged.match_tolerances.price_tolerance_percent == Decimal("3.5")
        assert merged.match_tolerances.quantity_tolerance_percent == Decimal("5")
        assert merged.get_step_config(P2PStepType.THREE_WAY_MATCH).timeout == 500
        assert merged.get_step_config(P2PStepType.THREE_WAY_MATCH).order == 6
        assert len(merged.steps) == 9
        assert base.get_step_config(P2PStepType.THREE_WAY_MATCH).timeout is None

    def test_no_overrides_returns_copy(self):
        base = default_flow_config("t-1")
        merged = merge_config(base, None)
        assert merged == base
        assert merged is not base


class TestConfigStore:

    def test_lifecycle(self):
        clock = FakeClock()

        async def run():
            store = P2PFlowConfigStore(clock=clock)
            created = await store.get_config("t-1")
            clock.advance(hours=1)
            tolerances = await store.update_match_tolerances("t-1", {"quantity_tolerance_percent": 10})
            features = await store.update_features("t-1", {"enableAutoPayment": True})
            settings = await store.update_settings("t-1", {"max_concurrent_flows": 5})
            step = await store.update_step_config("t-1", P2PStepType.PAYMENT_TRACKING, {"enabled": False})
            tenants = await store.list_tenants()
            reset = await store.reset_config("t-1")
            return created, tolerances, features, settings, step, tenants, reset

        created, tolerances, features, settings, step, tenants, reset = asyncio.run(run())

        assert created.created_at == FIXED_NOW
        assert tolerances.match_tolerances.quantity_tolerance_percent == Decimal("10")
        assert tolerances.updated_at == FIXED_NOW + timedelta(hours=1)
        assert features.features.enable_auto_payment is True
        # Earlier updates survive later ones
        assert settings.match_tolerances.quantity_tolerance_percent == Decimal("10")
        assert settings.settings.max_concurrent_flows == 5
        assert step.get_step_config(P2PStepType.PAYMENT_TRACKING).enabled is False
        assert step.features.enable_auto_payment is True
        assert tenants == ["t-1"]
        assert reset.features.enable_auto_payment is False

    def test_save_keeps_creation_time(self):
        clock = FakeClock()

        async def run():
            store = P2PFlowConfigStore(clock=clock)
            original = await store.get_config("t-1")
            clock.advance(days=1)
            replacement = default_flow_config("other", clock()).model_copy(update={"name": "Custom"})
            return await store.save_config("t-1", replacement), original

        saved, original = asyncio.run(run())
        assert saved.tenant_id == "t-1"
        assert saved.name == "Custom"
        assert saved.created_at == original.created_at
        assert saved.updated_at == FIXED_NOW + timedelta(days=1)

    def test_unknown_step_type(self):
        async def run():
            await P2PFlowConfigStore().update_step_config("t-1", "bogus", {"enabled": False})

        with pytest.raises(ValueError):
            asyncio.run(run())


class TestFlowLog:

    @staticmethod
    def flow(flow_id="f-1", tenant_id="t-1"):
        from flows.p2p.types import P2PFlowInstance, P2PPurchaseOrderData
        from conftest import sample_po
        po = P2PPurchaseOrderData.model_validate(sample_po())
        return P2PFlowInstance(id=flow_id, tenant_id=tenant_id, purchase_order_id=po.po_id, po_data=po,
                               correlation_id="c-1")

    def test_queries(self):
        from flows.p2p.flow_log import P2PFlowLog
        clock = FakeClock()

        async def run():
            flow_log = P2PFlowLog(clock=clock)
            await flow_log.log(self.flow(), "info", "Flow started")
            clock.advance(minutes=1)
            await flow_log.log_step(self.flow(), P2PStepType.GOODS_RECEIPT, "error", "Receipt failed", {"code": "X"})
            clock.advance(minutes=1)
            await flow_log.log(self.flow("f-2"), "warn", "Other flow")
            return (
                await flow_log.get_flow_logs("f-1"),
                await flow_log.get_flow_logs("f-1", level="error"),
                await flow_log.get_flow_logs("f-1", step=P2PStepType.GOODS_RECEIPT),
                await flow_log.get_flow_logs("f-1", since=FIXED_NOW + timedelta(seconds=30)),
                await flow_log.get_flow_logs("f-1", limit=1),
                await flow_log.get_tenant_logs("t-1", limit=2),
                await flow_log.clear_flow_logs("f-1"),
                await flow_log.get_flow_logs("f-1"),
            )

        all_entries, errors, by_step, since, limited, tenant, removed, after = asyncio.run(run())

        assert [e.message for e in all_entries] == ["Flow started", "Receipt failed"]
        assert all_entries[0].correlation_id == "c-1"
        assert errors[0].data == {"code": "X"}
        assert [e.message for e in by_step] == ["Receipt failed"]
        assert [e.message for e in since] == ["Receipt failed"]
        assert [e.message for e in limited] == ["Receipt failed"]
        assert [e.message for e in tenant] == ["Other flow", "Receipt failed"]
        assert removed == 2
        assert after == []

    def test_bounded_repository(self):
        from flows.p2p.flow_log import InMemoryFlowLogRepository, P2PFlowLog

        async def run():
            flow_log = P2PFlowLog(repository=InMemoryFlowLogRepository(capacity=2))
            for i in range(3):
                await flow_log.log(self.flow(), "debug", f"entry {i}")
            return await flow_log.get_flow_logs("f-1")

        assert [e.message for e in asyncio.run(run())] == ["entry 1", "entry 2"]
