"""Tests del RiskScoringEngine: fórmulas, bandas, proveedores y flags."""

import asyncio

import pytest

from motor_confianza.core.config import ScoringConfig
from motor_confianza.core.exceptions import ConfigurationException, ValidationException
from motor_confianza.domain.schemas import FlagSeverity, SignalOverrides, TrustTier
from motor_confianza.services.risk_scoring import RiskScoringEngine, _clamp

PHONE = "a" * 64
EMAIL = "b" * 64

ALL_FEATURES = (
    "device_health",
    "agent_activity",
    "social_influence",
    "financial_trust",
    "security_score",
    "longevity",
)


class StaticProvider:
    """Proveedor de prueba: valor fijo, con retardo o error opcionales."""

    def __init__(self, feature, value=80.0, fallback=42.0, delay=0.0, error=None):
        self.feature = feature
        self.value = value
        self.fallback = fallback
        self.delay = delay
        self.error = error
        self.calls = 0
        self.last_context = None

    async def fetch(self, account_id, context, timeout):
        self.calls += 1
        self.last_context = context
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.value


def _engine(audit, references, profiles, clock, config=None, providers=(), timeout=0.5):
    return RiskScoringEngine(
        audit            = audit,
        references       = references,
        profiles         = profiles,
        config           = config or ScoringConfig(),
        providers        = providers,
        provider_timeout = timeout,
        clock            = clock,
    )


class TestBaseline:

    async def test_fresh_account(self, engine):
        result = await engine.calculate_score("@alice")

        assert result.components == {
            "device_health":    50.0,
            "agent_activity":   10.0,
            "social_influence": 50.0,
            "financial_trust":  50.0,
            "security_score":   100.0,
            "longevity":        10.0,
        }
        assert result.score == 50.0
        assert result.tier == TrustTier.BRONZE
        assert result.account_id == "@alice"

    async def test_recommendations_sorted_by_gain(self, engine):
        result = await engine.calculate_score("@alice")

        assert [(r.feature, r.potential_gain) for r in result.recommendations] == [
            ("agent_activity",   7.5),
            ("longevity",        5.0),
            ("financial_trust",  2.5),
            ("device_health",    2.0),
            ("social_influence", 1.0),
        ]
        assert all(r.message for r in result.recommendations)

    async def test_no_recommendations_when_all_signals_healthy(self, engine):
        overrides = {f: 100 for f in ALL_FEATURES}
        result = await engine.calculate_score("@alice", overrides)
        assert result.recommendations == []

    async def test_profile_is_updated_in_place(self, engine, clock):
        result = await engine.calculate_score("@alice")
        profile = await engine.get_profile("@alice")

        assert profile.score == result.score
        assert profile.tier == result.tier
        assert profile.components == result.components
        assert profile.last_scored_at == clock.now

    async def test_invalid_account_rejected(self, engine):
        with pytest.raises(ValidationException):
            await engine.calculate_score("not valid!")


class TestTiers:

    @pytest.mark.parametrize(
        "score,tier",
        [
            (100, TrustTier.PLATINUM),
            (90, TrustTier.PLATINUM),
            (89.99, TrustTier.GOLD),
            (89, TrustTier.GOLD),
            (75, TrustTier.GOLD),
            (74.99, TrustTier.SILVER),
            (60, TrustTier.SILVER),
            (59, TrustTier.BRONZE),
            (40, TrustTier.BRONZE),
            (39.99, TrustTier.UNRANKED),
            (0, TrustTier.UNRANKED),
        ],
    )
    async def test_band_boundaries(self, engine, score, tier):
        assert engine.tier_for_score(score) == tier

    async def test_tier_is_recomputed_without_ratchet(self, engine):
        high = await engine.calculate_score("@alice", {f: 100 for f in ALL_FEATURES})
        low = await engine.calculate_score("@alice", {f: 0 for f in ALL_FEATURES})
        assert high.tier == TrustTier.PLATINUM
        assert low.tier == TrustTier.UNRANKED


class TestOverrides:

    async def test_override_replaces_component(self, engine):
        result = await engine.calculate_score("@alice", {"device_health": 90})
        assert result.components["device_health"] == 90.0

    async def test_overrides_model_accepted(self, engine):
        result = await engine.calculate_score("@alice", SignalOverrides(longevity=70))
        assert result.components["longevity"] == 70.0

    @pytest.mark.parametrize(
        "overrides",
        [{"charisma": 50}, {"device_health": 101}, {"longevity": -1}, {"security_score": "high"}],
    )
    async def test_invalid_overrides_rejected(self, engine, overrides):
        with pytest.raises(ValidationException):
            await engine.calculate_score("@alice", overrides)

    @pytest.mark.parametrize("value", [0, 13.37, 50, 99.99, 100])
    async def test_score_within_bounds(self, engine, value):
        result = await engine.calculate_score("@alice", {f: value for f in ALL_FEATURES})
        assert 0 <= result.score <= 100
        assert result.score == round(value, 2)

    async def test_identical_state_yields_identical_result(self, engine, audit):
        await audit.record_event("@alice", "login")
        await engine.record_payment_success("@alice", 2_000)

        first = await engine.calculate_score("@alice", {"device_health": 70})
        second = await engine.calculate_score("@alice", {"device_health": 70})

        assert (first.score, first.tier, first.components) == (
            second.score, second.tier, second.components,
        )


class TestFormulas:

    @pytest.mark.parametrize(
        "days,expected",
        [(0, 10), (6, 10), (7, 20), (29, 20), (30, 40), (90, 60), (180, 80), (365, 100), (900, 100)],
    )
    async def test_longevity_bands(self, engine, clock, days, expected):
        await engine.profiles.ensure_profile("@alice")
        clock.advance(days=days, hours=1)
        result = await engine.calculate_score("@alice")
        assert result.components["longevity"] == expected

    @pytest.mark.parametrize(
        "events,expected",
        [(0, 10), (1, 20), (2, 20), (3, 40), (10, 60), (20, 80), (50, 100)],
    )
    async def test_activity_bands(self, engine, audit, events, expected):
        for _ in range(events):
            await audit.record_event("@alice", "login")
        result = await engine.calculate_score("@alice")
        assert result.components["agent_activity"] == expected

    async def test_activity_outside_window_is_ignored(self, engine, audit, clock):
        for _ in range(5):
            await audit.record_event("@alice", "login")
        clock.advance(days=31)
        result = await engine.calculate_score("@alice")
        assert result.components["agent_activity"] == 10

    async def test_financial_trust_reliable_payer(self, engine, audit):
        for _ in range(11):
            await engine.record_payment_success("@alice", 10_000)
        await audit.record_event("@alice", "gateway_link", gateway="venmo")
        await audit.record_event("@alice", "gateway_link", gateway="paypal")

        result = await engine.calculate_score("@alice")
        # 50 + 20 + 20 + 10 + 10 + 5 = 115 → acotado a 100
        assert result.components["financial_trust"] == 100

    async def test_financial_trust_thresholds_are_strict(self, engine):
        for _ in range(10):
            await engine.record_payment_success("@alice", 10_000)

        result = await engine.calculate_score("@alice")
        # 10 transacciones y 100,000 de gasto no superan los umbrales:
        # 50 + 20 (ratio) + 5 (promedio)
        assert result.components["financial_trust"] == 75

    async def test_single_gateway_gets_no_bonus(self, engine, audit):
        await audit.record_event("@alice", "gateway_link", gateway="venmo")
        await audit.record_event("@alice", "gateway_link", gateway="paypal")
        await audit.record_event("@alice", "gateway_unlink", gateway="paypal")
        result = await engine.calculate_score("@alice")
        assert result.components["financial_trust"] == 50

    @pytest.mark.parametrize("failures,expected", [(3, 50), (4, 35)])
    async def test_failed_payments_penalty(self, engine, failures, expected):
        for _ in range(failures):
            await engine.record_payment_failure("@alice")
        result = await engine.calculate_score("@alice")
        assert result.components["financial_trust"] == expected

    async def test_single_flag(self, engine):
        await engine.add_risk_flag("@alice", "chargeback")
        result = await engine.calculate_score("@alice")
        assert result.components["security_score"] == 75
        assert result.components["financial_trust"] == 30

    async def test_many_flags_trigger_associated_risk(self, engine):
        for i in range(3):
            await engine.add_risk_flag("@alice", f"chargeback {i}")
        result = await engine.calculate_score("@alice")
        assert result.components["security_score"] == 25
        # 50 - 25 (riesgo asociado 75 > 50) - 20 (flags)
        assert result.components["financial_trust"] == 5

    @pytest.mark.parametrize("shared,expected", [(1, 50), (2, 25)])
    async def test_shared_references_feed_associated_risk(
        self, engine, references, shared, expected
    ):
        hashes = [PHONE, EMAIL][:shared]
        types = ["phone_hash", "email_hash"][:shared]
        for ref_type, value_hash in zip(types, hashes):
            await references.register_reference("@alice", ref_type, value_hash)
            await references.register_reference("@mule", ref_type, value_hash)

        result = await engine.calculate_score("@alice")
        assert result.components["financial_trust"] == expected
        assert result.components["security_score"] == 100

    async def test_custom_weights(self, audit, references, profiles, clock):
        weights = {f: 0.0 for f in ALL_FEATURES}
        weights["security_score"] = 1.0
        engine = _engine(audit, references, profiles, clock, ScoringConfig(WEIGHTS=weights))

        await engine.add_risk_flag("@alice", "velocity")
        result = await engine.calculate_score("@alice")
        assert result.score == 75.0
        assert result.tier == TrustTier.GOLD


class TestPaymentsAndFlags:

    async def test_payment_aggregates_without_recompute(self, engine):
        await engine.record_payment_success("@alice", 1_000)
        await engine.record_payment_success("@alice", 2_500)
        await engine.record_payment_failure("@alice")

        profile = await engine.get_profile("@alice")
        assert profile.total_spent_cents == 3_500
        assert profile.transactions == 3
        assert profile.successes == 2
        assert profile.failures == 1
        assert profile.last_scored_at is None
        assert profile.tier == TrustTier.UNRANKED

    async def test_concurrent_payments_are_atomic(self, engine):
        await asyncio.gather(
            *(engine.record_payment_success("@alice", 100) for _ in range(10))
        )
        profile = await engine.get_profile("@alice")
        assert profile.total_spent_cents == 1_000
        assert profile.transactions == 10

    async def test_negative_amount_rejected(self, engine):
        with pytest.raises(ValidationException):
            await engine.record_payment_success("@alice", -5)

    async def test_unknown_profile_is_none(self, engine):
        assert await engine.get_profile("@ghost") is None

    async def test_flag_points_capped_at_100(self, engine):
        for i in range(5):
            await engine.add_risk_flag("@alice", f"flag {i}", "low")

        profile = await engine.get_profile("@alice")
        assert profile.fraud_risk_points == 100
        assert len(profile.risk_flags) == 5

        result = await engine.calculate_score("@alice")
        assert result.components["security_score"] == 0

    async def test_flag_fields(self, engine, clock):
        flag = await engine.add_risk_flag("@alice", "account takeover", FlagSeverity.HIGH)
        assert flag.id is not None
        assert flag.severity == FlagSeverity.HIGH
        assert flag.reason == "account takeover"
        assert flag.created_at == clock.now
        assert not flag.is_resolved

    @pytest.mark.parametrize("reason,severity", [("", "medium"), ("x", "critical")])
    async def test_invalid_flag_rejected(self, engine, reason, severity):
        with pytest.raises(ValidationException):
            await engine.add_risk_flag("@alice", reason, severity)

    async def test_resolved_flag_stops_counting(self, engine):
        flag = await engine.add_risk_flag("@alice", "disputed")
        resolved = await engine.resolve_risk_flag(flag.id)

        assert resolved.is_resolved
        assert await engine.get_risk_flags("@alice", include_resolved=False) == []
        assert len(await engine.get_risk_flags("@alice")) == 1

        result = await engine.calculate_score("@alice")
        assert result.components["security_score"] == 100
        assert result.components["financial_trust"] == 50

        # El acumulado histórico no se descuenta
        profile = await engine.get_profile("@alice")
        assert profile.fraud_risk_points == 25

    async def test_resolve_unknown_flag(self, engine):
        assert await engine.resolve_risk_flag(9_999) is None

    async def test_flags_never_decay_by_default(self, engine, clock):
        await engine.add_risk_flag("@alice", "old incident")
        clock.advance(days=3_650)
        result = await engine.calculate_score("@alice")
        assert result.components["security_score"] == 75

    async def test_flags_decay_when_configured(self, audit, references, profiles, clock):
        engine = _engine(
            audit, references, profiles, clock, ScoringConfig(FLAG_DECAY_DAYS=30)
        )
        await engine.add_risk_flag("@alice", "old incident")

        assert (await engine.calculate_score("@alice")).components["security_score"] == 75
        clock.advance(days=31)
        result = await engine.calculate_score("@alice")
        assert result.components["security_score"] == 100
        assert result.components["financial_trust"] == 50
        assert await engine.get_active_flags("@alice") == []


class TestProviders:

    async def test_provider_value_used(self, audit, references, profiles, clock):
        provider = StaticProvider("social_influence", value=80)
        engine = _engine(audit, references, profiles, clock, providers=[provider])

        result = await engine.calculate_score("@alice")
        assert result.components["social_influence"] == 80
        assert provider.calls == 1

    async def test_provider_replaces_internal_formula(self, audit, references, profiles, clock):
        provider = StaticProvider("agent_activity", value=95)
        engine = _engine(audit, references, profiles, clock, providers=[provider])
        result = await engine.calculate_score("@alice")
        assert result.components["agent_activity"] == 95

    async def test_override_wins_over_provider(self, audit, references, profiles, clock):
        provider = StaticProvider("social_influence", value=80)
        engine = _engine(audit, references, profiles, clock, providers=[provider])

        result = await engine.calculate_score("@alice", {"social_influence": 10})
        assert result.components["social_influence"] == 10
        assert provider.calls == 0

    async def test_timeout_uses_fallback(self, audit, references, profiles, clock, caplog):
        provider = StaticProvider("social_influence", delay=1.0, fallback=42)
        engine = _engine(audit, references, profiles, clock, providers=[provider], timeout=0.05)

        result = await engine.calculate_score("@alice")
        assert result.components["social_influence"] == 42
        assert "Timeout" in caplog.text

    async def test_error_uses_fallback(self, audit, references, profiles, clock, caplog):
        provider = StaticProvider("device_health", error=RuntimeError("boom"), fallback=33)
        engine = _engine(audit, references, profiles, clock, providers=[provider])

        result = await engine.calculate_score("@alice")
        assert result.components["device_health"] == 33
        assert "device_health" in caplog.text

    @pytest.mark.parametrize("value,expected", [(150, 100), (-5, 0), ("bad", 42), (float("nan"), 42)])
    async def test_out_of_range_values(self, audit, references, profiles, clock, value, expected):
        provider = StaticProvider("social_influence", value=value, fallback=42)
        engine = _engine(audit, references, profiles, clock, providers=[provider])
        result = await engine.calculate_score("@alice")
        assert result.components["social_influence"] == expected

    async def test_context_carries_latest_device(self, audit, references, profiles, clock):
        provider = StaticProvider("device_health", value=90)
        engine = _engine(audit, references, profiles, clock, providers=[provider])
        await audit.record_event("@alice", "login", device_hash="d" * 64)

        await engine.calculate_score("@alice", context={"channel": "app"})
        assert provider.last_context == {"device_hash": "d" * 64, "channel": "app"}

    async def test_unknown_provider_feature_rejected(self, audit, references, profiles, clock):
        with pytest.raises(ConfigurationException):
            _engine(audit, references, profiles, clock, providers=[StaticProvider("karma")])


class TestWeightValidation:

    def test_config_rejects_weights_not_summing_to_one(self):
        weights = dict(ScoringConfig().WEIGHTS)
        weights["longevity"] = 0.0   # suma 0.9
        with pytest.raises(ConfigurationException):
            ScoringConfig(WEIGHTS=weights)

    async def test_engine_rejects_mutated_config(self, audit, references, profiles, clock):
        config = ScoringConfig()
        config.WEIGHTS = {**config.WEIGHTS, "device_health": 0.5}
        with pytest.raises(ConfigurationException):
            _engine(audit, references, profiles, clock, config)

    async def test_engine_rejects_mutated_nan_weight(self, audit, references, profiles, clock):
        config = ScoringConfig()
        config.WEIGHTS = {**config.WEIGHTS, "longevity": float("nan")}
        with pytest.raises(ConfigurationException):
            _engine(audit, references, profiles, clock, config)

    @pytest.mark.parametrize(
        "value,expected",
        [(float("nan"), 0.0), (-5.0, 0.0), (150.0, 100.0), (42.5, 42.5)],
    )
    def test_clamp_fails_closed_on_nan(self, value, expected):
        assert _clamp(value) == expected
