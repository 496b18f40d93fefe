import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from lichupdate.applier import ApplyPartialFailure, UpdateApplier
from lichupdate.config import CoreFiles, InstallLayout
from lichupdate.files import FileKind

CORE = CoreFiles(
    snapshot_scripts=("alias.lic", "dependency.lic", "ewaggle.lic"),
    scripts={"all": ("alias.lic",), "gs": ("ewaggle.lic",), "dr": ("dependency.lic",)},
    data=("effect-list.xml",),
)


class FakeFiles:
    def __init__(self) -> None:
        self.calls: list[tuple[FileKind, str]] = []

    def update_file(self, kind: FileKind, name: str, channel: str = "production") -> bool:
        self.calls.append((kind, name))
        return True


def _install(root: Path) -> None:
    (root / "lich.rbw").write_bytes(b"old entry point")
    (root / "lib" / "common").mkdir(parents=True)
    (root / "lib" / "custom").mkdir()
    (root / "lib" / "version.rb").write_text("LICH_VERSION = '5.14.3'\n", encoding="utf-8")
    (root / "lib" / "retired.rb").write_text("# removed upstream\n", encoding="utf-8")
    (root / "lib" / "common" / "old_helper.rb").write_text("# old\n", encoding="utf-8")
    (root / "lib" / "custom" / "user.rb").write_text("# user's own\n", encoding="utf-8")


def _artifact(root: Path) -> Path:
    extracted = root / "temp" / "lich5"
    (extracted / "lib" / "common").mkdir(parents=True)
    (extracted / "lich.rbw").write_bytes(b"new entry point")
    (extracted / "lib" / "version.rb").write_text("LICH_VERSION = '5.15.0'\n", encoding="utf-8")
    (extracted / "lib" / "common" / "new_helper.rb").write_text("# new\n", encoding="utf-8")
    return extracted


def _applier(root: Path, *, game: str = "GS") -> tuple[UpdateApplier, FakeFiles, list[str]]:
    reports: list[str] = []
    files = FakeFiles()
    applier = UpdateApplier(
        InstallLayout(root), files, CORE, game=game, report=reports.append, clock=lambda: 1700000000.0  # type: ignore[arg-type]
    )
    return applier, files, reports


class TestApply(unittest.TestCase):
    def _assert_library_replaced(self, root: Path) -> None:
        lib = root / "lib"
        self.assertEqual((lib / "version.rb").read_text(encoding="utf-8"), "LICH_VERSION = '5.15.0'\n")
        self.assertFalse((lib / "retired.rb").exists())
        self.assertEqual(sorted(p.name for p in (lib / "common").iterdir()), ["new_helper.rb"])
        self.assertTrue((lib / "custom" / "user.rb").is_file())

    def test_apply_replaces_library_scripts_executable_and_marker(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _install(root)
            applier, files, reports = _applier(root)

            applier.apply(_artifact(root), "5.15.0")

            self._assert_library_replaced(root)
            self.assertEqual((root / "lich.rbw").read_bytes(), b"new entry point")
            marker = json.loads((root / "data" / "lich-update.json").read_text(encoding="utf-8"))
            self.assertEqual(marker["version"], "5.15.0")
            self.assertNotIn(".lib-", " ".join(p.name for p in root.iterdir()))

        self.assertIn("All Lich lib files have been updated.", reports)
        self.assertEqual(
            files.calls,
            [(FileKind.DATA, "effect-list.xml"), (FileKind.SCRIPT, "alias.lic"), (FileKind.SCRIPT, "ewaggle.lic")],
        )

    def test_falls_back_to_copy_when_rename_is_refused(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _install(root)
            extracted = _artifact(root)
            applier, _, _ = _applier(root)

            with patch("pathlib.Path.rename", side_effect=OSError("Invalid cross-device link")):
                applier.swap_library(extracted / "lib")

            self._assert_library_replaced(root)
            self.assertNotIn(".lib-", " ".join(p.name for p in root.iterdir()))

    def test_failure_after_library_swap_is_partial(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _install(root)
            extracted = _artifact(root)
            (extracted / "lich.rbw").unlink()
            applier, _, _ = _applier(root)

            with self.assertRaises(ApplyPartialFailure) as ctx:
                applier.apply(extracted, "5.15.0")

            self.assertEqual(ctx.exception.step, "replacing lich.rbw")
            self.assertIn("Update failed while replacing lich.rbw", str(ctx.exception))
            self.assertFalse((root / "data" / "lich-update.json").exists())


class TestSyncCoreFiles(unittest.TestCase):
    def test_dr_refreshes_dr_scripts(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            applier, files, _ = _applier(Path(td), game="DR")
            applier.sync_core_files()
        self.assertEqual(files.calls[1:], [(FileKind.SCRIPT, "alias.lic"), (FileKind.SCRIPT, "dependency.lic")])

    def test_invalid_game_skips_refresh(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            applier, files, reports = _applier(Path(td), game="XX")
            applier.sync_core_files()
        self.assertEqual(files.calls, [])
        self.assertEqual(reports, ["invalid game type 'XX', unsure what scripts to update"])

    def test_existing_data_file_is_kept_aside(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "data").mkdir()
            (root / "data" / "effect-list.xml").write_text("<local edits/>", encoding="utf-8")
            applier, _, reports = _applier(root)

            applier.sync_core_files()

            aside = root / "data" / "effect-list-1700000000.xml"
            self.assertEqual(aside.read_text(encoding="utf-8"), "<local edits/>")
        self.assertIn("effect-list-1700000000.xml", reports[0])


if __name__ == "__main__":
    unittest.main()
