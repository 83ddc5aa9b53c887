"""Tests for the gadgetlink command line."""
import json

import pytest

from gadget_link import cli
from gadget_link.gadget import MODULES_LOAD
from gadget_link.reconcile import ActionKind


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("GADGETLINK_LOG_FILE", str(tmp_path / "logs" / "gadgetlink.log"))
    return tmp_path / "logs"


def _use_host(monkeypatch, host):
    configs = []

    def fake_create_backend(config):
        configs.append(config)
        return host

    monkeypatch.setattr(cli, "create_backend", fake_create_backend)
    return configs


class TestParser:
    """Tests for argument parsing."""

    def test_share_defaults(self):
        args = cli.build_parser().parse_args(["share"])

        assert args.public == "Wi-Fi"
        assert args.private == "Ethernet 2"
        assert not args.dry_run

    def test_config_and_preset_exclusive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["apply", "--config", "x.yaml", "--preset", "windows-ics"])

    def test_unknown_preset_rejected(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["apply", "--preset", "netplan"])


class TestShareCommand:
    """Tests for gadgetlink share."""

    def test_share(self, windows_host, monkeypatch, capsys):
        _use_host(monkeypatch, windows_host)

        assert cli.main(["share"]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert "[applied] enable_sharing Wi-Fi (public=Wi-Fi, private=Ethernet 2)" in out
        assert "Verified: Ethernet 2" in out
        assert "Sharing: verified" in out

    def test_share_custom_adapters(self, windows_host, monkeypatch, capsys):
        _use_host(monkeypatch, windows_host)

        assert cli.main(["share", "--private", "Ethernet"]) == cli.EXIT_OK

        (action,) = windows_host.executed
        assert action.params["private"] == "Ethernet"

    def test_dry_run(self, windows_host, monkeypatch, capsys):
        _use_host(monkeypatch, windows_host)

        assert cli.main(["share", "--dry-run"]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert "$ fake enable_sharing Wi-Fi" in out
        assert "DRY RUN: 0 changed" in out
        assert windows_host.executed == []

    def test_report_written(self, windows_host, monkeypatch, tmp_path):
        _use_host(monkeypatch, windows_host)
        path = tmp_path / "reports" / "share.json"

        assert cli.main(["share", "--report", str(path)]) == cli.EXIT_OK

        report = json.loads(path.read_text())
        assert report["success"] is True
        assert report["changed"] == 1
        assert report["verified"] == ["Ethernet 2"]
        assert report["sharing_phase"] == "verified"
        assert report["outcomes"] == [{
            "action": "enable_sharing Wi-Fi (public=Wi-Fi, private=Ethernet 2)",
            "status": "applied",
            "detail": "",
        }]

    def test_missing_adapter_is_fatal(self, windows_host, monkeypatch, caplog):
        _use_host(monkeypatch, windows_host)

        assert cli.main(["share", "--private", "Ethernet 5"]) == cli.EXIT_FATAL
        assert "Ethernet 5" in caplog.text
        assert windows_host.executed == []

    def test_interrupt(self, monkeypatch):
        def interrupted(config):
            raise KeyboardInterrupt

        monkeypatch.setattr(cli, "create_backend", interrupted)

        assert cli.main(["share"]) == cli.EXIT_INTERRUPTED


class TestApplyCommand:
    """Tests for gadgetlink apply."""

    def test_preset(self, pi_host, monkeypatch, capsys):
        configs = _use_host(monkeypatch, pi_host)

        code = cli.main(["apply", "--preset", "pi-usb-priority", "--skip-boot-config",
                         "--no-egress-check"])

        assert code == cli.EXIT_OK
        assert configs[0].sudo is True
        out = capsys.readouterr().out
        assert "Verified: usb0" in out
        assert "Internet traffic leaves via usb0 (metric 100)" in out
        assert "Egress" not in out

    def test_second_run_reports_no_changes(self, pi_host, monkeypatch, capsys):
        _use_host(monkeypatch, pi_host)
        argv = ["apply", "--preset", "pi-usb-priority", "--skip-boot-config", "--no-egress-check"]
        cli.main(argv)
        capsys.readouterr()

        assert cli.main(argv) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "No changes needed" in out
        assert "Verified: usb0" in out

    def test_failed_action_exits_non_zero(self, pi_host, monkeypatch, capsys, caplog):
        """The run continues past a failed action but the exit code reports it."""
        _use_host(monkeypatch, pi_host)
        pi_host.fail_kinds.add(ActionKind.SET_METRIC)

        code = cli.main(["apply", "--preset", "pi-usb-priority", "--skip-boot-config",
                         "--no-egress-check"])

        assert code == cli.EXIT_FATAL
        out = capsys.readouterr().out
        assert "[ failed] set_metric usb0 (metric=100)" in out
        assert "1 failed" in out
        assert "1 action(s) failed" in caplog.text

    def test_validation_error(self, pi_host, tmp_path, monkeypatch, capsys):
        _use_host(monkeypatch, pi_host)
        path = tmp_path / "bad.yaml"
        path.write_text("sharing:\n  public: wlan0\n  private: usb0\n")

        assert cli.main(["apply", "--config", str(path)]) == cli.EXIT_FATAL
        assert "Validation failed" in capsys.readouterr().out
        assert pi_host.executed == []

    def test_missing_config_file(self, tmp_path):
        assert cli.main(["apply", "--config", str(tmp_path / "missing.yaml")]) == cli.EXIT_FATAL

    def test_boot_config_edited(self, pi_host, tmp_path, monkeypatch, capsys):
        _use_host(monkeypatch, pi_host)
        config_txt = tmp_path / "config.txt"
        cmdline_txt = tmp_path / "cmdline.txt"
        config_txt.write_text("[all]\n")
        cmdline_txt.write_text("console=tty1 rootwait\n")
        path = tmp_path / "gadgetlink.yaml"
        path.write_text(
            "host:\n  type: networkmanager\n"
            f"gadget:\n  config_txt: {config_txt}\n  cmdline_txt: {cmdline_txt}\n"
        )

        assert cli.main(["apply", "--config", str(path), "--no-egress-check"]) == cli.EXIT_OK

        assert "reboot required" in capsys.readouterr().out
        assert MODULES_LOAD in cmdline_txt.read_text()

    def test_boot_config_skipped_on_dry_run(self, pi_host, tmp_path, monkeypatch):
        _use_host(monkeypatch, pi_host)
        cmdline_txt = tmp_path / "cmdline.txt"
        cmdline_txt.write_text("console=tty1 rootwait\n")
        path = tmp_path / "gadgetlink.yaml"
        path.write_text(
            f"gadget:\n  config_txt: {tmp_path / 'config.txt'}\n  cmdline_txt: {cmdline_txt}\n"
        )

        assert cli.main(["apply", "--config", str(path), "--dry-run"]) == cli.EXIT_OK
        assert MODULES_LOAD not in cmdline_txt.read_text()


class TestStatusAndHistory:
    """Tests for gadgetlink status and history."""

    def test_status(self, pi_host, monkeypatch, capsys):
        _use_host(monkeypatch, pi_host)

        assert cli.main(["status", "--preset", "pi-usb-priority"]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert out.startswith("Host: fakehost")
        assert "Internet traffic leaves via wlan0 (metric 600)" in out

    def test_history_empty(self, capsys):
        assert cli.main(["history"]) == cli.EXIT_OK
        assert "No recorded changes" in capsys.readouterr().out

    def test_history_after_share(self, windows_host, monkeypatch, capsys):
        _use_host(monkeypatch, windows_host)
        cli.main(["share"])
        capsys.readouterr()

        assert cli.main(["history", "--operation", "enable_sharing"]) == cli.EXIT_OK

        (line,) = capsys.readouterr().out.strip().splitlines()
        assert "fakehost  enable_sharing Wi-Fi  OK  [cli]" in line
