from exam_engine.core.config import Settings


def test_mock_login_defaults_to_off(monkeypatch):
    monkeypatch.delenv("ENABLE_MOCK_LOGIN", raising=False)
    assert Settings(_env_file=None).ENABLE_MOCK_LOGIN is False


def test_mock_login_can_be_enabled_from_env(monkeypatch):
    monkeypatch.setenv("ENABLE_MOCK_LOGIN", "true")
    assert Settings(_env_file=None).ENABLE_MOCK_LOGIN is True


def test_log_level_is_case_insensitive(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert Settings(_env_file=None).LOG_LEVEL == "DEBUG"
    assert Settings(_env_file=None, LOG_LEVEL=" warning ").LOG_LEVEL == "WARNING"
