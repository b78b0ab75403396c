from conductor.config_loader import _deep_merge, load_config


def test_defaults():
    config = load_config()
    assert config.limits.max_retries == 3
    assert config.limits.step_timeout_ms == 30000
    assert config.limits.concurrency == 1
    assert config.limits.fail_fast is True
    assert config.retry.backoff_base_ms == 1000
    assert config.guard.max_conflict_retries == 3


def test_project_overrides_are_deep_merged(tmp_path):
    (tmp_path / ".conductor").mkdir()
    (tmp_path / ".conductor" / "config.yaml").write_text(
        "limits:\n  concurrency: 4\nretry:\n  backoff_base_ms: 0\n"
    )

    config = load_config(tmp_path)

    assert config.limits.concurrency == 4
    assert config.limits.max_retries == 3
    assert config.retry.backoff_base_ms == 0
    assert config.retry.backoff_max_ms == 30000


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("CONDUCTOR_MAX_RETRIES", "5")
    monkeypatch.setenv("CONDUCTOR_STEP_TIMEOUT_MS", "250")

    config = load_config(tmp_path)

    assert config.limits.max_retries == 5
    assert config.limits.step_timeout_ms == 250


def test_storage_paths_resolve_against_root(tmp_path):
    storage = load_config(tmp_path).resolve_storage(tmp_path)
    assert storage.db_path == str(tmp_path / ".conductor" / "tasks.db")
    assert storage.plan_dir == str(tmp_path / ".conductor" / "plans")


def test_deep_merge_does_not_mutate_base():
    base = {"a": {"b": 1, "c": 2}}
    merged = _deep_merge(base, {"a": {"b": 3}})
    assert merged == {"a": {"b": 3, "c": 2}}
    assert base == {"a": {"b": 1, "c": 2}}
