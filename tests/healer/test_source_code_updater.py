"""Unit tests for the source code updater."""

import os
import time
from pathlib import Path

from src.intent_healer.core.audit_trail import AuditEventType, AuditTrail
from src.intent_healer.core.metrics import MetricsCollector
from src.intent_healer.core.models.healing_models import AutoUpdateConfig, SourceLocation, ValidatedHeal
from src.intent_healer.services.source_code_updater import SourceCodeUpdater


def validated(path, line=8, original="id=login-btn", replacement="id=sign-in", confidence=0.95):
    return ValidatedHeal(
        heal_id="heal-1",
        run_id="run-1",
        original_locator=original,
        healed_locator=replacement,
        confidence=confidence,
        scenario="User Signs In",
        location=SourceLocation(str(path), line)
    )


class TestSourceCodeUpdater:
    """Test cases for SourceCodeUpdater."""

    def setup_method(self):
        self.metrics = MetricsCollector()
        self.audit = AuditTrail()

    def _updater(self, tmp_path, **overrides):
        values = dict(enabled=True, min_confidence=0.9, backup_dir=str(tmp_path / "backups"))
        values.update(overrides)
        return SourceCodeUpdater(AutoUpdateConfig(**values), metrics=self.metrics, audit=self.audit)

    def test_apply_heal_rewrites_locator(self, tmp_path, robot_file):
        updater = self._updater(tmp_path)
        heal = validated(robot_file)

        result = updater.apply_heal(heal)

        assert result.success
        assert result.line_number == 8
        assert result.old_line == "    Click Button    id=login-btn"
        assert result.new_line == "    Click Button    id=sign-in"
        assert "    Click Button    id=sign-in\n" in robot_file.read_text(encoding="utf-8")
        assert "id=user" in robot_file.read_text(encoding="utf-8")
        assert Path(result.backup_path).exists()
        assert heal.applied_at is not None

    def test_backup_holds_original_content(self, tmp_path, robot_file):
        original = robot_file.read_text(encoding="utf-8")

        result = self._updater(tmp_path).apply_heal(validated(robot_file))

        assert Path(result.backup_path).read_text(encoding="utf-8") == original

    def test_finds_locator_when_lines_shifted(self, tmp_path, robot_file):
        result = self._updater(tmp_path).apply_heal(validated(robot_file, line=10))

        assert result.success
        assert result.line_number == 8

    def test_locator_missing_near_line(self, tmp_path, robot_file):
        result = self._updater(tmp_path).apply_heal(validated(robot_file, original="id=missing"))

        assert not result.success
        assert "not found near line 8" in result.error_message

    def test_missing_file(self, tmp_path):
        result = self._updater(tmp_path).apply_heal(validated(tmp_path / "gone.robot"))

        assert not result.success
        assert "File not found" in result.error_message

    def test_dry_run_leaves_file_untouched(self, tmp_path, robot_file):
        original = robot_file.read_text(encoding="utf-8")

        result = self._updater(tmp_path, dry_run=True).apply_heal(validated(robot_file))

        assert result.success
        assert result.dry_run
        assert result.new_line == "    Click Button    id=sign-in"
        assert robot_file.read_text(encoding="utf-8") == original
        assert result.backup_path is None

    def test_invalid_result_is_not_written(self, tmp_path, robot_file, monkeypatch):
        updater = self._updater(tmp_path)
        original = robot_file.read_text(encoding="utf-8")
        monkeypatch.setattr(updater, "validate_robot_syntax", lambda path: (False, "broken table"))

        result = updater.apply_heal(validated(robot_file))

        assert not result.success
        assert not result.syntax_valid
        assert "broken table" in result.error_message
        assert robot_file.read_text(encoding="utf-8") == original
        assert [p.name for p in robot_file.parent.iterdir() if p.name.startswith(".login_")] == []

    def test_validate_robot_syntax_accepts_suite(self, tmp_path, robot_file):
        valid, error = self._updater(tmp_path).validate_robot_syntax(str(robot_file))

        assert valid
        assert error is None

    def test_text_locator_written_as_xpath(self, tmp_path, robot_file):
        self._updater(tmp_path).apply_heal(validated(robot_file, replacement="text=Sign in"))

        assert "Click Button    xpath=//*[normalize-space()='Sign in']" in robot_file.read_text(encoding="utf-8")

    def test_python_page_object_rewritten(self, tmp_path):
        page = tmp_path / "login_page.py"
        page.write_text(
            "from selenium.webdriver.common.by import By\n"
            "\n"
            "SIGN_IN = (By.ID, \"login-btn\")\n",
            encoding="utf-8"
        )

        result = self._updater(tmp_path).apply_heal(
            validated(page, line=3, replacement="css=button[type='submit']"))

        assert result.success
        assert "SIGN_IN = (By.CSS_SELECTOR, \"button[type='submit']\")" in page.read_text(encoding="utf-8")

    def test_apply_all_skips_ineligible_heals(self, tmp_path, robot_file):
        updater = self._updater(tmp_path, exclude_patterns=["*/vendor/*"])
        excluded = validated(tmp_path / "vendor" / "shared.robot")
        low = validated(robot_file, confidence=0.7)
        floating = ValidatedHeal("heal-2", "run-1", "id=a", "id=b", 0.99, "Scenario")

        results = updater.apply_all_validated([excluded, low, floating, validated(robot_file)])

        assert [r.skipped for r in results] == [True, True, True, False]
        assert "exclude pattern" in results[0].skip_reason
        assert "below auto update threshold" in results[1].skip_reason
        assert results[2].skip_reason == "no updatable source location"
        assert results[3].success

    def test_undecodable_file_does_not_stop_later_heals(self, tmp_path, robot_file):
        legacy = tmp_path / "legacy.robot"
        legacy.write_bytes(b"*** Test Cases ***\nCaf\xe9 Login\n    Click Button    id=login-btn\n")
        updater = self._updater(tmp_path)

        results = updater.apply_all_validated([validated(legacy, line=3), validated(robot_file)])

        assert not results[0].success
        assert results[0].error_message.startswith("Update failed")
        assert results[1].success
        assert "id=sign-in" in robot_file.read_text(encoding="utf-8")
        assert self.metrics.get_current_metrics().source_updates_applied == 1

    def test_disabled_updater_skips_everything(self, tmp_path, robot_file):
        results = self._updater(tmp_path, enabled=False).apply_all_validated([validated(robot_file)])

        assert results[0].skip_reason == "auto update disabled"
        assert "id=login-btn" in robot_file.read_text(encoding="utf-8")

    def test_rollback_restores_original(self, tmp_path, robot_file):
        updater = self._updater(tmp_path)
        original = robot_file.read_text(encoding="utf-8")
        updater.apply_heal(validated(robot_file))

        assert updater.rollback(str(robot_file))
        assert robot_file.read_text(encoding="utf-8") == original
        assert not updater.rollback(str(robot_file))
        assert self.metrics.get_current_metrics().rollback_count == 1

    def test_rollback_all_restores_earliest_backup(self, tmp_path, robot_file):
        updater = self._updater(tmp_path)
        original = robot_file.read_text(encoding="utf-8")
        updater.apply_heal(validated(robot_file))
        updater.apply_heal(validated(robot_file, original="id=user", replacement="name=username", line=7))

        assert updater.rollback_all() == 1
        assert robot_file.read_text(encoding="utf-8") == original

    def test_updates_are_recorded(self, tmp_path, robot_file):
        self._updater(tmp_path).apply_heal(validated(robot_file))

        assert self.metrics.get_current_metrics().source_updates_applied == 1
        events = self.audit.get_events_by_type(AuditEventType.SOURCE_UPDATED)
        assert events[0].success

    def test_cleanup_old_backups(self, tmp_path, robot_file):
        updater = self._updater(tmp_path)
        backup = Path(updater.backup_file(str(robot_file)))
        old = time.time() - 10 * 24 * 3600
        os.utime(backup, (old, old))
        updater.backup_file(str(robot_file))

        assert updater.cleanup_old_backups(retention_days=7) == 1
        assert len(list((tmp_path / "backups").iterdir())) == 1
