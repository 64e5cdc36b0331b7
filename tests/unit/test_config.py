from __future__ import annotations

import textwrap

import pytest

from runestone.config import DEFAULT_GOAL, Settings, load_settings, merge_config
from runestone.errors import InputError


def test_defaults_cover_known_goals() -> None:
    settings = Settings.from_mapping()

    assert settings.default_goal == DEFAULT_GOAL
    assert {"hexagonal_architecture", "layered_architecture", "clean_architecture", "modular_monolith"} <= set(
        settings.goals
    )
    assert settings.thresholds_for(None).name == DEFAULT_GOAL
    assert settings.thresholds_for("layered_architecture").priorities == {"enforce_boundary": 2, "break_cycle": 3}
    assert ".runestone/**" in settings.analysis.exclude


def test_unknown_goal_is_an_input_error() -> None:
    with pytest.raises(InputError, match="Unknown target goal"):
        Settings.from_mapping().thresholds_for("microkernel")


def test_merge_config_is_deep_and_leaves_base_untouched() -> None:
    base = {"goals": {"g": {"max_coupling": 3.0, "max_god_files": 0}}}
    merged = merge_config(base, {"goals": {"g": {"max_coupling": 1.0}}})

    assert merged["goals"]["g"] == {"max_coupling": 1.0, "max_god_files": 0}
    assert base["goals"]["g"]["max_coupling"] == 3.0


def test_workspace_yaml_is_merged_over_defaults(tmp_path) -> None:
    (tmp_path / "runestone.yaml").write_text(
        textwrap.dedent(
            """
            session:
              default_goal: modular_monolith
            checkpoints:
              retain: 2
            validation:
              commands: ["pytest -q"]
            """
        ),
        encoding="utf-8",
    )

    settings = load_settings(tmp_path)

    assert settings.default_goal == "modular_monolith"
    assert settings.checkpoints.retain == 2
    assert settings.validation.commands == ["pytest -q"]
    assert settings.persistence.state_dir == ".runestone"


def test_overrides_apply_last(tmp_path) -> None:
    settings = load_settings(tmp_path, overrides={"locking": {"timeout_seconds": 1}})
    assert settings.locking.timeout_seconds == 1


def test_missing_explicit_config_is_rejected(tmp_path) -> None:
    with pytest.raises(InputError, match="Config file not found"):
        load_settings(tmp_path, config_path=tmp_path / "absent.yaml")


def test_invalid_values_are_input_errors(tmp_path) -> None:
    config = tmp_path / "bad.yaml"
    config.write_text("checkpoints:\n  retain: -1\n", encoding="utf-8")
    with pytest.raises(InputError, match="Invalid configuration"):
        load_settings(tmp_path, config_path=config)


def test_non_mapping_yaml_is_rejected(tmp_path) -> None:
    config = tmp_path / "list.yaml"
    config.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(InputError, match="Expected mapping"):
        load_settings(tmp_path, config_path=config)
