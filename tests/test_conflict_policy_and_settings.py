"""Tests for the YAML conflict policy and environment-driven merge settings."""

from __future__ import annotations

import pytest

from kinmerge.models.entity import EntityType
from kinmerge.services.merge.config import MergeConfigError, MergeSettings
from kinmerge.services.merge.policy import (
    DEFAULT_CONFLICT_POLICY,
    ConflictPolicy,
    ConflictPolicyError,
    load_conflict_policy,
)
from kinmerge.services.merge.preview import compute_merged_fields
from kinmerge.services.merge.service import MergeProposalService

SETTINGS_ENV = (
    "KINMERGE_HIGH_RISK_THRESHOLD",
    "KINMERGE_DETECTOR_BATCH_SIZE",
    "KINMERGE_UNDO_WINDOW_DAYS",
    "KINMERGE_PROPOSAL_TTL_DAYS",
    "KINMERGE_CONFLICT_POLICY_PATH",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every merge setting from the environment."""
    for key in SETTINGS_ENV:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestConflictPolicy:
    """Conflict-sensitive field policy."""

    def test_default_policy_covers_vital_fields(self) -> None:
        assert DEFAULT_CONFLICT_POLICY.is_sensitive(EntityType.PERSON, "birth_date")
        assert DEFAULT_CONFLICT_POLICY.is_sensitive(EntityType.PERSON, "gender")
        assert not DEFAULT_CONFLICT_POLICY.is_sensitive(EntityType.PERSON, "bio")
        assert not DEFAULT_CONFLICT_POLICY.is_sensitive(EntityType.FAMILY, "name")

    def test_load_from_yaml(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("person:\n  - bio\nfamily:\n  - name\n", encoding="utf-8")

        policy = ConflictPolicy.from_yaml(path)

        assert policy.is_sensitive(EntityType.PERSON, "bio")
        assert not policy.is_sensitive(EntityType.PERSON, "birth_date")
        assert policy.is_sensitive(EntityType.FAMILY, "name")

    def test_missing_entity_type_has_no_sensitive_fields(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("person: [birth_date]\n", encoding="utf-8")

        policy = ConflictPolicy.from_yaml(path)

        assert not policy.is_sensitive(EntityType.FAMILY, "locale")

    def test_empty_file_means_no_conflicts(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("", encoding="utf-8")

        policy = ConflictPolicy.from_yaml(path)

        assert policy.sensitive_fields == {}

    @pytest.mark.parametrize(
        "content",
        [
            "- birth_date\n",
            "animal:\n  - name\n",
            "person: birth_date\n",
            "person:\n  - shoe_size\n",
            "person: [birth_date\n",
        ],
    )
    def test_malformed_files_rejected(self, tmp_path, content: str) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(ConflictPolicyError):
            ConflictPolicy.from_yaml(path)

    def test_missing_file_rejected(self, tmp_path) -> None:
        with pytest.raises(ConflictPolicyError):
            load_conflict_policy(str(tmp_path / "nope.yaml"))

    def test_load_without_path_returns_default(self) -> None:
        assert load_conflict_policy(None) is DEFAULT_CONFLICT_POLICY

    def test_policy_drives_conflicts(self, tmp_path) -> None:
        """A field only becomes a conflict when the policy marks it sensitive."""
        path = tmp_path / "policy.yaml"
        path.write_text("person: [bio]\n", encoding="utf-8")
        policy = ConflictPolicy.from_yaml(path)

        canonical = {"bio": "Teacher", "birth_date": "1950-03-02"}
        duplicate = {"bio": "Farmer", "birth_date": "1950-03-03"}
        merged, conflicts = compute_merged_fields(
            EntityType.PERSON, canonical, duplicate, policy=policy
        )

        assert [c.field for c in conflicts] == ["bio"]
        assert merged["birth_date"] == "1950-03-02"

    def test_service_loads_policy_from_settings(self, engine, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("person:\n  - middle_name\n", encoding="utf-8")

        MergeProposalService(engine, settings=MergeSettings(conflict_policy_path=str(path)))

        bad = tmp_path / "bad.yaml"
        bad.write_text("person: [favourite_colour]\n", encoding="utf-8")
        with pytest.raises(ConflictPolicyError):
            MergeProposalService(engine, settings=MergeSettings(conflict_policy_path=str(bad)))


class TestMergeSettings:
    """Environment-driven settings."""

    def test_defaults(self, clean_env) -> None:
        settings = MergeSettings.from_env()

        assert settings == MergeSettings(
            high_risk_threshold=50,
            detector_batch_size=50,
            undo_window_days=7,
            proposal_ttl_days=30,
            conflict_policy_path=None,
        )

    def test_reads_environment(self, clean_env) -> None:
        clean_env.setenv("KINMERGE_HIGH_RISK_THRESHOLD", "70")
        clean_env.setenv("KINMERGE_DETECTOR_BATCH_SIZE", " 10 ")
        clean_env.setenv("KINMERGE_UNDO_WINDOW_DAYS", "14")
        clean_env.setenv("KINMERGE_PROPOSAL_TTL_DAYS", "3")
        clean_env.setenv("KINMERGE_CONFLICT_POLICY_PATH", "/etc/kinmerge/policy.yaml")

        settings = MergeSettings.from_env()

        assert settings.high_risk_threshold == 70
        assert settings.detector_batch_size == 10
        assert settings.undo_window_days == 14
        assert settings.proposal_ttl_days == 3
        assert settings.conflict_policy_path == "/etc/kinmerge/policy.yaml"

    def test_blank_values_use_defaults(self, clean_env) -> None:
        clean_env.setenv("KINMERGE_UNDO_WINDOW_DAYS", "  ")

        assert MergeSettings.from_env().undo_window_days == 7

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("KINMERGE_HIGH_RISK_THRESHOLD", "101"),
            ("KINMERGE_HIGH_RISK_THRESHOLD", "-1"),
            ("KINMERGE_HIGH_RISK_THRESHOLD", "high"),
            ("KINMERGE_DETECTOR_BATCH_SIZE", "0"),
            ("KINMERGE_UNDO_WINDOW_DAYS", "-3"),
            ("KINMERGE_PROPOSAL_TTL_DAYS", "1.5"),
        ],
    )
    def test_invalid_values_rejected(self, clean_env, key: str, value: str) -> None:
        clean_env.setenv(key, value)

        with pytest.raises(MergeConfigError) as exc_info:
            MergeSettings.from_env()

        assert key in str(exc_info.value)

    def test_settings_are_immutable(self) -> None:
        settings = MergeSettings()

        with pytest.raises(AttributeError):
            settings.undo_window_days = 1  # type: ignore[misc]
