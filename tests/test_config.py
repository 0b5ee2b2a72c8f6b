import pytest

from core.config import ImageTierSettings, Settings, load_settings_from_env
from core.errors import ValidationIssue
from core.services.form_access import check_form_access, get_allowed_forms
from core.validators import validate_birth_month, validate_birth_year


def test_defaults_from_env(monkeypatch):
    monkeypatch.setenv("DB_BACKEND", "sqlite")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("SQLITE_PATH", "/tmp/cq.db")
    monkeypatch.delenv("REGISTERED_DAILY_LIMIT", raising=False)
    settings = load_settings_from_env()

    assert settings.limit_for_tier("unregistered") == 100
    assert settings.limit_for_tier("registered") == 10
    assert settings.limit_for_tier("premium") == 50
    assert settings.resolved_database_url() == "sqlite:////tmp/cq.db"
    settings.validate()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DB_BACKEND", "sqlite")
    monkeypatch.setenv("REGISTERED_DAILY_LIMIT", "3")
    monkeypatch.setenv("UNREGISTERED_FORMS", "fortune,travel")
    monkeypatch.setenv("PREMIUM_USER_MAX_IMAGE_SIZE_KB", "900")
    settings = load_settings_from_env()

    assert settings.limit_for_tier("registered") == 3
    assert settings.allowed_forms["unregistered"] == ("fortune", "travel")
    assert settings.image_tier("premium").max_size_kb == 900


def test_validate_reports_every_problem():
    settings = Settings(
        db_backend="sqlite",
        sqlite_path=":memory:",
        image_tiers={"registered": ImageTierSettings(base_quality=50)},
        minimum_image_quality=60,
        asset_candidate_limit=0,
    )
    with pytest.raises(RuntimeError) as excinfo:
        settings.validate()
    message = str(excinfo.value)
    assert message.startswith("Configuration invalid:")
    assert "REGISTERED_USER_BASE_QUALITY" in message
    assert "ASSET_CANDIDATE_LIMIT" in message


def test_postgres_requires_database_url():
    with pytest.raises(RuntimeError):
        Settings(db_backend="postgres").validate()


def test_form_access_per_tier(settings):
    assert get_allowed_forms("unregistered", settings) == ("fortune",)
    assert check_form_access("fortune", "unregistered", settings)
    assert not check_form_access("career", "unregistered", settings)
    assert check_form_access("career", "registered", settings)
    assert check_form_access("travel", "premium", settings)
    assert not check_form_access("tarot", "premium", settings)
    assert get_allowed_forms("nonsense", settings) == ("fortune",)


@pytest.mark.parametrize("month", ["²", "٣", "0", "13", "1a"])
def test_birth_month_rejects_non_ascii_and_out_of_range(month):
    with pytest.raises(ValidationIssue):
        validate_birth_month(month)


@pytest.mark.parametrize("year", ["²²²²", "１９９０", "199", "19a0"])
def test_birth_year_requires_ascii_digits(year):
    with pytest.raises(ValidationIssue):
        validate_birth_year(year)


def test_birth_fields_accept_plain_digits():
    validate_birth_month("07")
    validate_birth_year("1990")
