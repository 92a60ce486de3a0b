import contextlib
import io
import json
import os
import shutil
import tempfile
from pathlib import Path
import unittest
from unittest import mock

from dotsafe import (
    DotsafeError,
    Installer,
    ManifestStore,
    Settings,
    TimestampNotFoundError,
    TmuxBackups,
    Uninstaller,
    assume_yes,
    main,
    prompt_confirm,
)


def never(question: str) -> bool:
    return False


class DotfilesHomeTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.home = Path(tmp.name)
        self.repo = self.home / "dotfiles"
        self.repo.mkdir()
        (self.repo / ".zshrc").write_text("# managed zshrc\n")
        (self.repo / ".gitconfig").write_text("[user]\n  name = managed\n")
        (self.repo / "tmux.conf").write_text("set -g mouse on\n")
        self.settings = Settings(
            home=self.home,
            dotfiles_dir=self.repo,
            backup_dir=self.home / ".dotfiles-backup",
        )
        self.store = ManifestStore(self.settings.manifest_path)

    def write(self, rel: str, content: str) -> Path:
        path = self.home / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path


class InstallerTests(DotfilesHomeTestCase):
    def test_install_backs_up_then_links(self) -> None:
        zshrc = self.write(".zshrc", "# my own zshrc\n")

        report = Installer(self.settings, self.store, assume_yes).install()

        self.assertTrue(report.ok)
        self.assertTrue(zshrc.is_symlink())
        self.assertEqual(Path(os.readlink(zshrc)), self.repo / ".zshrc")
        self.assertEqual(Path(os.readlink(self.home / ".tmux.conf")), self.repo / "tmux.conf")
        self.assertFalse((self.home / ".p10k.zsh").exists())
        backed_up = {e.item: Path(e.backup_path).read_text() for e in report.backup.entries}
        self.assertEqual(backed_up, {"zshrc": "# my own zshrc\n"})

    def test_reinstall_is_a_no_op(self) -> None:
        self.write(".zshrc", "# my own zshrc\n")
        installer = Installer(self.settings, self.store, assume_yes)
        installer.install()

        second = installer.install()

        self.assertEqual(second.linked, [])
        self.assertEqual(len(second.already_linked), 3)
        self.assertEqual(second.backup.entries, [])
        self.assertEqual(len(self.store.list_timestamps()), 1)

    def test_failed_backup_is_never_overwritten(self) -> None:
        zshrc = self.write(".zshrc", "# precious\n")
        real_copy2 = shutil.copy2

        def flaky_copy(src, dst, *args, **kwargs):
            if Path(src).name == ".zshrc":
                raise PermissionError(13, "Permission denied", str(src))
            return real_copy2(src, dst, *args, **kwargs)

        with mock.patch("dotsafe.shutil.copy2", side_effect=flaky_copy):
            report = Installer(self.settings, self.store, assume_yes).install()

        self.assertFalse(report.ok)
        self.assertFalse(zshrc.is_symlink())
        self.assertEqual(zshrc.read_text(), "# precious\n")
        self.assertEqual(report.skipped, [str(zshrc)])
        self.assertTrue((self.home / ".gitconfig").is_symlink())

    def test_dry_run_changes_nothing(self) -> None:
        zshrc = self.write(".zshrc", "# mine\n")
        Installer(self.settings, self.store, assume_yes).install(dry_run=True)
        self.assertFalse(zshrc.is_symlink())
        self.assertFalse(self.settings.backup_dir.exists())

    def test_missing_repository_is_an_error(self) -> None:
        shutil.rmtree(self.repo)
        with self.assertRaises(DotsafeError):
            Installer(self.settings, self.store, assume_yes).install()

    def test_check_existing_asks_about_hand_written_zshrc(self) -> None:
        self.write(".zshrc", "a\nb\nc\n")
        questions = []

        def record(question: str) -> bool:
            questions.append(question)
            return False

        self.assertFalse(Installer(self.settings, self.store, record).check_existing())
        self.assertEqual(len(questions), 1)

    def test_check_existing_passes_without_zshrc(self) -> None:
        self.assertTrue(Installer(self.settings, self.store, never).check_existing())


class UninstallerTests(DotfilesHomeTestCase):
    def install(self) -> None:
        Installer(self.settings, self.store, assume_yes).install()

    def test_uninstall_restores_original_files(self) -> None:
        zshrc = self.write(".zshrc", "# mine\n")
        self.install()

        report = Uninstaller(self.settings, self.store, assume_yes).uninstall(
            remove_repository=False, remove_backups=False
        )

        self.assertTrue(report.ok)
        self.assertFalse(zshrc.is_symlink())
        self.assertEqual(zshrc.read_text(), "# mine\n")
        # .gitconfig had no original, so only its link goes away.
        self.assertFalse((self.home / ".gitconfig").exists())
        self.assertTrue(self.repo.is_dir())
        self.assertTrue(self.settings.backup_dir.is_dir())

    def test_uninstall_cancelled(self) -> None:
        self.install()
        self.assertIsNone(Uninstaller(self.settings, self.store, never).uninstall())
        self.assertTrue((self.home / ".zshrc").is_symlink())

    def test_uninstall_without_backups_only_removes_links(self) -> None:
        self.install()
        shutil.rmtree(self.settings.backup_dir, ignore_errors=True)

        report = Uninstaller(self.settings, self.store, assume_yes).uninstall(
            remove_repository=False, remove_backups=False
        )

        self.assertIsNone(report)
        self.assertFalse((self.home / ".zshrc").exists())

    def test_purge_removes_repository_and_backups(self) -> None:
        self.write(".zshrc", "# mine\n")
        self.install()

        Uninstaller(self.settings, self.store, assume_yes).uninstall(
            remove_repository=True, remove_backups=True
        )

        self.assertFalse(self.repo.exists())
        self.assertFalse(self.settings.backup_dir.exists())
        self.assertEqual((self.home / ".zshrc").read_text(), "# mine\n")

    def test_remove_symlinks_only_touches_dotfiles_links(self) -> None:
        self.install()
        elsewhere = self.write("vimrc.local", "set nu\n")
        os.symlink(elsewhere, self.home / ".vimrc")

        removed = Uninstaller(self.settings, self.store, assume_yes).remove_symlinks()

        self.assertEqual(len(removed), 3)
        self.assertTrue((self.home / ".vimrc").is_symlink())

    def test_quick_restore_with_unknown_timestamp_keeps_links(self) -> None:
        self.write(".zshrc", "# mine\n")
        self.install()
        with self.assertRaises(TimestampNotFoundError):
            Uninstaller(self.settings, self.store, assume_yes).quick_restore("20990101_000000")
        self.assertTrue((self.home / ".zshrc").is_symlink())

    def test_brewfile_packages(self) -> None:
        (self.repo / "Brewfile").write_text(
            'tap "homebrew/bundle"\nbrew "git"\n# brew "commented"\ncask "iterm2"\n'
        )
        packages = Uninstaller(self.settings, self.store).brewfile_packages()
        self.assertEqual(packages, ['brew "git"', 'cask "iterm2"'])


class TmuxBackupsTests(DotfilesHomeTestCase):
    def test_backup_writes_manifest_and_copies(self) -> None:
        self.write(".tmux.conf", "set -g prefix C-a\n")
        self.write(".tmux/plugins/tpm/tpm", "#!/bin/sh\n")

        directory = TmuxBackups(self.settings).backup(timestamp="20250101_120000")

        self.assertEqual(directory.name, "tmux-20250101_120000")
        self.assertEqual((directory / ".tmux.conf.backup").read_text(), "set -g prefix C-a\n")
        self.assertTrue((directory / ".tmux.backup/plugins/tpm/tpm").exists())
        manifest = json.loads((directory / "manifest.json").read_text())
        self.assertEqual(manifest["type"], "tmux-setup")
        self.assertEqual(manifest["files_backed_up"], [".tmux.conf", ".tmux/"])

    def test_restore_latest(self) -> None:
        conf = self.write(".tmux.conf", "original\n")
        self.write(".tmux/theme.conf", "dark\n")
        tmux = TmuxBackups(self.settings)
        tmux.backup(timestamp="20250101_120000")
        conf.unlink()
        os.symlink(self.repo / "tmux.conf", conf)
        (self.home / ".tmux/theme.conf").write_text("light\n")

        tmux.restore(kill_server=False)

        self.assertFalse(conf.is_symlink())
        self.assertEqual(conf.read_text(), "original\n")
        self.assertEqual((self.home / ".tmux/theme.conf").read_text(), "dark\n")

    def test_restore_by_directory_name(self) -> None:
        conf = self.write(".tmux.conf", "older\n")
        tmux = TmuxBackups(self.settings)
        tmux.backup(timestamp="20250101_120000")
        conf.write_text("newer\n")
        tmux.backup(timestamp="20250102_120000")

        self.assertEqual([p.name for p in tmux.list()], ["tmux-20250102_120000", "tmux-20250101_120000"])
        tmux.restore("tmux-20250101_120000", kill_server=False)
        self.assertEqual(conf.read_text(), "older\n")

    def test_restore_without_backups_fails(self) -> None:
        with self.assertRaises(TimestampNotFoundError):
            TmuxBackups(self.settings).restore(kill_server=False)


class ConfirmTests(unittest.TestCase):
    def test_prompt_confirm(self) -> None:
        with mock.patch("builtins.input", return_value="Y"):
            self.assertTrue(prompt_confirm("Continue?"))
        with mock.patch("builtins.input", return_value="n"):
            self.assertFalse(prompt_confirm("Continue?"))
        with mock.patch("builtins.input", side_effect=EOFError):
            self.assertFalse(prompt_confirm("Continue?"))


class CliTests(DotfilesHomeTestCase):
    def run_cli(self, *args: str) -> int:
        argv = list(args) + [
            "--home", str(self.home),
            "--dotfiles-dir", str(self.repo),
            "--backup-dir", str(self.settings.backup_dir),
            "--no-color",
        ]
        return main(argv)

    def test_list_without_backups_succeeds(self) -> None:
        self.assertEqual(self.run_cli("list"), 0)

    def test_list_json(self) -> None:
        self.write(".zshrc", "zsh")
        self.assertEqual(self.run_cli("backup"), 0)
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            self.assertEqual(self.run_cli("list", "--json"), 0)
        result = json.loads(out.getvalue())
        self.assertEqual(len(result["backups"]), 1)
        self.assertEqual(result["backups"][0]["items"], 1)
        self.assertEqual(result["tmux"], [])

    def test_backup_failure_exits_non_zero(self) -> None:
        self.write(".zshrc", "zsh")
        with mock.patch("dotsafe.shutil.copy2", side_effect=PermissionError(13, "Permission denied")):
            self.assertEqual(self.run_cli("backup"), 1)

    def test_latest_and_restore(self) -> None:
        self.assertEqual(self.run_cli("latest"), 1)
        zshrc = self.write(".zshrc", "original")
        self.run_cli("backup")
        zshrc.write_text("mutated")

        self.assertEqual(self.run_cli("restore"), 0)
        self.assertEqual(zshrc.read_text(), "original")

    def test_restore_unknown_timestamp_exits_non_zero(self) -> None:
        self.assertEqual(self.run_cli("restore", "20990101_000000"), 1)

    def test_install_and_uninstall_with_yes(self) -> None:
        zshrc = self.write(".zshrc", "# mine\n")
        self.assertEqual(self.run_cli("install", "--yes"), 0)
        self.assertTrue(zshrc.is_symlink())

        self.assertEqual(self.run_cli("uninstall", "--yes"), 0)
        self.assertEqual(zshrc.read_text(), "# mine\n")
        self.assertTrue(self.repo.is_dir())
        self.assertTrue(self.settings.backup_dir.is_dir())

    def test_install_with_relative_dotfiles_dir(self) -> None:
        user_home = self.home / "user"
        zshrc = user_home / ".zshrc"
        zshrc.parent.mkdir()
        zshrc.write_text("# mine\n")
        cwd = os.getcwd()
        os.chdir(self.home)
        self.addCleanup(os.chdir, cwd)
        argv = [
            "--home", "user",
            "--dotfiles-dir", "dotfiles",
            "--backup-dir", str(self.settings.backup_dir),
            "--no-color",
        ]

        self.assertEqual(main(["install", "--yes"] + argv), 0)
        self.assertTrue(zshrc.is_symlink())
        self.assertEqual(zshrc.resolve(), (self.repo / ".zshrc").resolve())

        # A second install sees its own links and backs nothing up.
        self.assertEqual(main(["install", "--yes"] + argv), 0)
        self.assertEqual(len(self.store.list_timestamps()), 1)

        self.assertEqual(main(["uninstall", "--yes"] + argv), 0)
        self.assertFalse(zshrc.is_symlink())
        self.assertEqual(zshrc.read_text(), "# mine\n")
        self.assertFalse((user_home / ".gitconfig").exists())

    def test_restore_no_unlink_keeps_other_links(self) -> None:
        zshrc = self.write(".zshrc", "# mine\n")
        self.assertEqual(self.run_cli("install", "--yes"), 0)

        self.assertEqual(self.run_cli("restore", "--no-unlink"), 0)

        self.assertFalse(zshrc.is_symlink())
        self.assertEqual(zshrc.read_text(), "# mine\n")
        self.assertTrue((self.home / ".gitconfig").is_symlink())
        self.assertTrue((self.home / ".tmux.conf").is_symlink())

    def test_restore_removes_other_dotfiles_links_by_default(self) -> None:
        self.write(".zshrc", "# mine\n")
        self.run_cli("install", "--yes")

        self.assertEqual(self.run_cli("restore"), 0)

        self.assertFalse((self.home / ".gitconfig").exists())

    def test_cleanup_removes_run(self) -> None:
        self.write(".zshrc", "zsh")
        self.run_cli("backup")
        stamp = self.store.latest()

        self.assertEqual(self.run_cli("cleanup", stamp), 0)

        self.assertIsNone(self.store.latest())
        self.assertFalse((self.settings.backup_dir / stamp).exists())
        self.assertEqual(self.run_cli("cleanup", stamp), 1)

    def test_cleanup_all(self) -> None:
        self.write(".zshrc", "zsh")
        self.run_cli("backup")
        self.assertEqual(self.run_cli("cleanup", "--all", "--yes"), 0)
        self.assertFalse(self.settings.backup_dir.exists())

    def test_tmux_commands(self) -> None:
        self.write(".tmux.conf", "original\n")
        self.assertEqual(self.run_cli("backup-tmux"), 0)
        (self.home / ".tmux.conf").write_text("changed\n")
        self.assertEqual(self.run_cli("restore-tmux", "--keep-server"), 0)
        self.assertEqual((self.home / ".tmux.conf").read_text(), "original\n")


if __name__ == "__main__":
    unittest.main()
