import pytest

from doc_linker import config_loader
from doc_linker.config_loader import DEFAULTS, load_linking_config, merge_config, validate_config
from doc_linker.errors import ConfigError


def test_missing_default_file_returns_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("LINKING_CONFIG", raising=False)
    monkeypatch.setattr(config_loader, "DEFAULT_PATH", str(tmp_path / "missing.yml"))
    cfg = load_linking_config()
    assert cfg == merge_config(None)
    assert cfg["weights"] == DEFAULTS["weights"]


def test_partial_file_is_merged(tmp_path):
    p = tmp_path / "linking.yml"
    p.write_text("thresholds:\n  auto: 0.8\nassignment:\n  workers: 1\n", encoding="utf-8")
    cfg = load_linking_config(str(p))
    assert cfg["thresholds"] == {"min_candidate": 0.3, "auto": 0.8}
    assert cfg["assignment"]["workers"] == 1
    assert cfg["weights"]["amount"] == 0.35


def test_env_path(tmp_path, monkeypatch):
    p = tmp_path / "env.yml"
    p.write_text("skonto:\n  basis: percent\n", encoding="utf-8")
    monkeypatch.setenv("LINKING_CONFIG", str(p))
    assert load_linking_config()["skonto"]["basis"] == "percent"


def test_merge_does_not_mutate_defaults():
    merged = merge_config({"weights": {"amount": 0.5}})
    merged["thresholds"]["auto"] = 0.99
    assert DEFAULTS["thresholds"]["auto"] == 0.3
    assert DEFAULTS["weights"]["amount"] == 0.35


@pytest.mark.parametrize(
    "override",
    [
        {"weights": {"amount": 0.5}},
        {"weights": {"amount": -0.1, "vendor": 0.7}},
        {"weights": {"colour": 0.0}},
        {"thresholds": {"auto": 1.5}},
        {"tolerances": {"date_cutoff_days": 0}},
        {"tolerances": {"amount": -1}},
        {"skonto": {"basis": "gross"}},
        {"assignment": {"workers": 0}},
        {"assignment": {"workers": "many"}},
        {"tolerances": {"amount": "one cent"}},
        {"tolerances": 5},
        {"pattern": {"amount_threshold": 2}},
    ],
)
def test_invalid_config(override):
    with pytest.raises(ConfigError):
        validate_config(merge_config(override))


def test_invalid_yaml_shape(tmp_path):
    p = tmp_path / "bad.yml"
    p.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_linking_config(str(p))


def test_explicit_missing_file_is_an_error(tmp_path, monkeypatch):
    with pytest.raises(ConfigError):
        load_linking_config(str(tmp_path / "missing.yml"))
    monkeypatch.setenv("LINKING_CONFIG", str(tmp_path / "also-missing.yml"))
    with pytest.raises(ConfigError):
        load_linking_config()


def test_malformed_yaml(tmp_path):
    p = tmp_path / "broken.yml"
    p.write_text("weights: [amount: 0.5\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_linking_config(str(p))
