"""
Settings parsing and validation.
"""
import pytest
from pydantic import ValidationError

from enrollment_checkout.config import Settings
from enrollment_checkout.container import build_promotions
from enrollment_checkout.domain.models import PromotionKind


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


@pytest.mark.unit
class TestSettings:
    def test_defaults_select_server_backends(self) -> None:
        settings = make_settings()

        assert settings.store_backend == "sql"
        assert settings.cache_backend == "redis"
        assert settings.stripe_secret_key is None
        assert settings.is_test_mode is False

    def test_promo_codes_are_parsed(self) -> None:
        settings = make_settings(promo_codes="spring10:PERCENT:1000, WELCOME5:fixed:500")

        assert settings.get_promo_code_specs() == [
            ("SPRING10", "percent", 1000),
            ("WELCOME5", "fixed", 500),
        ]

    @pytest.mark.parametrize("raw", ["SPRING10:percent", "X:bogo:1", "X:fixed:ten"])
    def test_malformed_promo_code_is_rejected(self, raw: str) -> None:
        with pytest.raises(ValidationError):
            make_settings(promo_codes=raw)

    @pytest.mark.asyncio
    async def test_build_promotions_from_settings(self) -> None:
        catalog = build_promotions(make_settings(promo_codes="FIVEOFF:fixed:500"))

        promotion = await catalog.get_promotion("FIVEOFF")
        assert promotion is not None
        assert promotion.kind == PromotionKind.FIXED
        assert promotion.value == 500

    def test_stripe_key_prefix_is_checked(self) -> None:
        with pytest.raises(ValidationError):
            make_settings(stripe_secret_key="pk_test_wrong")

        assert make_settings(stripe_secret_key="sk_test_abc").is_test_mode is True

    def test_case_is_normalized(self) -> None:
        settings = make_settings(log_level="debug", default_currency="eur")

        assert settings.log_level == "DEBUG"
        assert settings.default_currency == "EUR"

    def test_bad_log_level(self) -> None:
        with pytest.raises(ValidationError):
            make_settings(log_level="verbose")

    def test_allowed_origins_skips_blanks(self) -> None:
        settings = make_settings(allowed_origins="http://a.test, ,http://b.test")

        assert settings.get_allowed_origins_list() == ["http://a.test", "http://b.test"]
