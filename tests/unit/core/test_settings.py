"""Tests for application settings."""

from erpflow.core.config import Settings, get_settings


class TestSettings:
    """Test settings defaults and environment overrides."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.default_editable_days == 14
        assert settings.approval_skip_under == 50000
        assert settings.approval_exec_threshold == 100000
        assert settings.mgmt_group_id == "mgmt"
        assert settings.exec_group_id == "exec"
        assert settings.elevated_roles_list == ["admin"]
        assert settings.ack_target_tables_list == ["approval_instances"]
        assert settings.policies_file is None

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("ERPFLOW_ELEVATED_ROLES", "admin, finance ,,")
        monkeypatch.setenv("ERPFLOW_DEFAULT_EDITABLE_DAYS", "30")

        settings = Settings(_env_file=None)

        assert settings.elevated_roles_list == ["admin", "finance"]
        assert settings.default_editable_days == 30

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("ERPFLOW_EXEC_GROUP_ID=board\n")

        assert Settings(_env_file=str(env_file)).exec_group_id == "board"

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
