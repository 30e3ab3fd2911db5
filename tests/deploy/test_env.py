"""Tests for container environment resolution."""

from dotenv import dotenv_values

from shipyard.deploy.env import (
    MASK,
    is_secret_key,
    mask_environment,
    merge_environment,
    read_source_env,
    render_env_file,
    transient_env_file,
)


class TestMerge:
    def test_stored_overrides_source(self):
        merged = merge_environment(
            {"NODE_ENV": "development", "PORT": "3000"},
            {"NODE_ENV": "production"},
            branch="main",
            commit="abc",
            domain="api.apps.example.com",
        )
        assert merged["NODE_ENV"] == "production"
        assert merged["PORT"] == "3000"

    def test_reserved_keys_win(self):
        merged = merge_environment(
            {"DEPLOY_BRANCH": "spoofed"},
            {"DEPLOY_DOMAIN": "evil.example.com"},
            branch="dev",
            commit="abc",
            domain="api-dev.apps.example.com",
        )
        assert merged["DEPLOY_BRANCH"] == "dev"
        assert merged["DEPLOY_COMMIT"] == "abc"
        assert merged["DEPLOY_DOMAIN"] == "api-dev.apps.example.com"


class TestSourceEnv:
    def test_missing_file(self, tmp_path):
        assert read_source_env(tmp_path) == {}

    def test_parses_dotenv(self, tmp_path):
        (tmp_path / ".env").write_text('# comment\nNODE_ENV=development\nGREETING="hello world"\nEMPTY\n')
        assert read_source_env(tmp_path) == {"NODE_ENV": "development", "GREETING": "hello world"}


class TestMasking:
    def test_secret_detection(self):
        assert is_secret_key("DATABASE_PASSWORD")
        assert is_secret_key("api_key")
        assert is_secret_key("GITHUB_TOKEN")
        assert not is_secret_key("NODE_ENV")

    def test_mask(self):
        masked = mask_environment({"JWT_SECRET": "x", "PORT": "3000"})
        assert masked == {"JWT_SECRET": MASK, "PORT": "3000"}


class TestEnvFile:
    def test_render(self):
        assert render_env_file({"A": "1", "B": "two\nlines"}) == "A=1\nB=two\\nlines\n"

    def test_transient_file_is_removed(self):
        with transient_env_file({"NODE_ENV": "production"}) as path:
            assert path.is_file()
            assert dotenv_values(path) == {"NODE_ENV": "production"}
        assert not path.exists()

    def test_removed_on_error(self):
        captured = {}
        try:
            with transient_env_file({"A": "1"}) as path:
                captured["path"] = path
                raise RuntimeError("docker run failed")
        except RuntimeError:
            pass
        assert not captured["path"].exists()
