"""Source code updater for writing validated heals back into test files."""

import fnmatch
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging

from robot.api import get_model
from robot.api.parsing import ModelVisitor

from ..core.audit_trail import AuditTrail
from ..core.metrics import MetricsCollector
from ..core.models.healing_models import AutoUpdateConfig, ValidatedHeal
from .locator_pattern_matcher import LocatorPatternMatcher


logger = logging.getLogger("healer.source_updater")

# Lines searched on either side of the recorded line when code has shifted
LINE_DRIFT = 3


@dataclass
class UpdateResult:
    """Result of applying one validated heal."""
    heal_id: str
    file_path: Optional[str]
    success: bool
    skipped: bool = False
    skip_reason: Optional[str] = None
    line_number: Optional[int] = None
    old_line: Optional[str] = None
    new_line: Optional[str] = None
    backup_path: Optional[str] = None
    error_message: Optional[str] = None
    syntax_valid: bool = True
    dry_run: bool = False

    @classmethod
    def skip(cls, heal: ValidatedHeal, reason: str) -> 'UpdateResult':
        file_path = heal.location.file_path if heal.location else None
        return cls(heal_id=heal.heal_id, file_path=file_path, success=False,
                   skipped=True, skip_reason=reason)

    def to_dict(self) -> Dict[str, object]:
        return dict(self.__dict__)


class _RobotErrorCollector(ModelVisitor):
    """Collects parse errors reported on any node of a Robot Framework model."""

    def __init__(self):
        self.errors: List[str] = []

    def generic_visit(self, node):
        self.errors.extend(getattr(node, "errors", None) or ())
        super().generic_visit(node)


class SourceCodeUpdater:
    """Applies validated heals as line-level edits with backup and rollback."""

    def __init__(self, config: AutoUpdateConfig, matcher: Optional[LocatorPatternMatcher] = None,
                 metrics: Optional[MetricsCollector] = None, audit: Optional[AuditTrail] = None):
        """Initialize the updater.

        Args:
            config: Auto-update policy
            matcher: Locator rewriting strategy
            metrics: Optional metrics collector
            audit: Optional audit trail
        """
        self.config = config
        self.matcher = matcher or LocatorPatternMatcher()
        self.metrics = metrics
        self.audit = audit
        self.backup_dir = Path(config.backup_dir)
        self._backups: Dict[str, List[str]] = {}

    def apply_all_validated(self, heals: List[ValidatedHeal]) -> List[UpdateResult]:
        """Apply every eligible heal. One failure never stops the rest.

        Returns:
            One UpdateResult per heal, skipped heals included
        """
        results = []
        for heal in heals:
            reason = self._skip_reason(heal)
            if reason:
                logger.info(f"Skipping heal {heal.heal_id}: {reason}")
                results.append(UpdateResult.skip(heal, reason))
                continue
            try:
                results.append(self.apply_heal(heal))
            except Exception as e:
                logger.exception(f"Unexpected error applying heal {heal.heal_id}")
                results.append(self._finish(heal, UpdateResult(
                    heal_id=heal.heal_id, file_path=heal.location.file_path, success=False,
                    error_message=f"Update failed: {e}", dry_run=self.config.dry_run)))

        applied = sum(1 for r in results if r.success)
        failed = sum(1 for r in results if not r.success and not r.skipped)
        if results:
            logger.info(f"Applied {applied} of {len(results)} validated heals ({failed} failed)")
        return results

    def apply_heal(self, heal: ValidatedHeal) -> UpdateResult:
        """Rewrite the heal's locator at its recorded source location."""
        location = heal.location
        result = UpdateResult(heal_id=heal.heal_id, file_path=location.file_path, success=False,
                              dry_run=self.config.dry_run)
        path = Path(location.file_path)
        if not path.exists():
            result.error_message = f"File not found: {location.file_path}"
            return self._finish(heal, result)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                lines = f.readlines()

            found = self._locate(lines, location.line_number, heal)
            if found is None:
                result.error_message = (f"Locator '{heal.original_locator}' not found near line "
                                        f"{location.line_number}")
                return self._finish(heal, result)

            index, new_line = found
            result.line_number = index + 1
            result.old_line = lines[index].rstrip("\n")
            result.new_line = new_line.rstrip("\n")

            if self.config.dry_run:
                result.success = True
                logger.info(f"[dry run] {path}:{index + 1}: {result.old_line.strip()} -> "
                            f"{result.new_line.strip()}")
                return self._finish(heal, result)

            if self.config.create_backups:
                result.backup_path = self.backup_file(str(path))

            lines[index] = new_line
            valid, error = self._write_atomically(path, lines)
            result.syntax_valid = valid
            if not valid:
                result.error_message = f"Updated file has syntax errors: {error}"
                return self._finish(heal, result)

            result.success = True
            heal.applied_at = datetime.now()
            logger.info(f"Replaced locator on {path}:{index + 1}: "
                        f"'{heal.original_locator}' -> '{heal.healed_locator}'")
        except (OSError, ValueError) as e:
            result.error_message = f"Update failed: {e}"
            logger.error(f"Failed to update locator in {path}: {e}")

        return self._finish(heal, result)

    def backup_file(self, file_path: str) -> str:
        """Create a timestamped backup of a source file.

        Raises:
            FileNotFoundError: If the source file doesn't exist
        """
        source_path = Path(file_path)
        if not source_path.exists():
            raise FileNotFoundError(f"Source file not found: {file_path}")

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_path = self.backup_dir / f"{source_path.stem}_{timestamp}{source_path.suffix}"
        shutil.copy2(source_path, backup_path)
        self._backups.setdefault(str(source_path), []).append(str(backup_path))
        logger.info(f"Created backup: {backup_path}")
        return str(backup_path)

    def validate_robot_syntax(self, file_path: str) -> Tuple[bool, Optional[str]]:
        """Validate Robot Framework syntax of a file.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            model = get_model(file_path)
        except Exception as e:
            return False, f"Syntax validation failed: {e}"
        collector = _RobotErrorCollector()
        collector.visit(model)
        if collector.errors:
            return False, "; ".join(collector.errors)
        return True, None

    def rollback(self, file_path: str) -> bool:
        """Restore the most recent backup taken for ``file_path``."""
        backups = self._backups.get(str(Path(file_path)))
        if not backups:
            logger.warning(f"No backup recorded for {file_path}")
            return False

        backup_path = backups.pop()
        try:
            shutil.copy2(backup_path, file_path)
        except OSError as e:
            logger.error(f"Failed to restore {file_path} from {backup_path}: {e}")
            if self.audit:
                self.audit.log_source_rollback(file_path, backup_path, False, str(e))
            return False

        logger.info(f"Restored {file_path} from backup {backup_path}")
        if self.metrics:
            self.metrics.record_source_update(True, rollback=True)
        if self.audit:
            self.audit.log_source_rollback(file_path, backup_path, True)
        return True

    def rollback_all(self) -> int:
        """Restore every file to its earliest backup from this session."""
        restored = 0
        for file_path, backups in list(self._backups.items()):
            if not backups:
                continue
            del backups[1:]
            if self.rollback(file_path):
                restored += 1
        return restored

    def cleanup_old_backups(self, retention_days: Optional[int] = None) -> int:
        """Delete backup files older than the retention period."""
        days = retention_days if retention_days is not None else self.config.backup_retention_days
        if not self.backup_dir.exists():
            return 0

        cutoff_time = datetime.now().timestamp() - days * 24 * 3600
        deleted_count = 0
        for backup_file in self.backup_dir.iterdir():
            if backup_file.is_file() and backup_file.stat().st_mtime < cutoff_time:
                backup_file.unlink()
                deleted_count += 1
                logger.info(f"Deleted old backup: {backup_file}")
        return deleted_count

    def _skip_reason(self, heal: ValidatedHeal) -> Optional[str]:
        if not self.config.enabled:
            return "auto update disabled"
        if not heal.meets_confidence_threshold(self.config.min_confidence):
            return (f"confidence {heal.confidence:.2f} below auto update threshold "
                    f"{self.config.min_confidence:.2f}")
        if not heal.can_auto_update:
            return "no updatable source location"
        pattern = self._excluded_by(heal.location.file_path)
        if pattern:
            return f"file matches exclude pattern '{pattern}'"
        return None

    def _excluded_by(self, file_path: str) -> Optional[str]:
        posix = Path(file_path).as_posix()
        name = Path(file_path).name
        for pattern in self.config.exclude_patterns:
            if fnmatch.fnmatch(posix, pattern) or fnmatch.fnmatch(name, pattern):
                return pattern
        return None

    def _locate(self, lines: List[str], line_number: int, heal: ValidatedHeal) -> Optional[Tuple[int, str]]:
        recorded = line_number - 1
        candidates = [recorded]
        for offset in range(1, LINE_DRIFT + 1):
            candidates.extend([recorded - offset, recorded + offset])
        for index in candidates:
            if 0 <= index < len(lines):
                match = self.matcher.replace_locator(lines[index], heal.original_locator, heal.healed_locator)
                if match.found:
                    return index, match.updated_line
        return None

    def _write_atomically(self, path: Path, lines: List[str]) -> Tuple[bool, Optional[str]]:
        fd, temp_file = tempfile.mkstemp(prefix=f".{path.stem}_", suffix=path.suffix, dir=str(path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.writelines(lines)
            if path.suffix == ".robot":
                valid, error = self.validate_robot_syntax(temp_file)
                if not valid:
                    os.remove(temp_file)
                    return False, error
            shutil.copymode(path, temp_file)
            os.replace(temp_file, path)
        except OSError:
            if os.path.exists(temp_file):
                os.remove(temp_file)
            raise
        return True, None

    def _finish(self, heal: ValidatedHeal, result: UpdateResult) -> UpdateResult:
        if self.metrics and not result.dry_run:
            self.metrics.record_source_update(result.success, backup_created=bool(result.backup_path))
        if self.audit and not result.dry_run:
            self.audit.log_source_update(result.file_path or "", heal.original_locator,
                                         heal.healed_locator, result.success, result.backup_path,
                                         result.error_message)
        return result
