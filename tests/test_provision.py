import json
import os
import stat
import subprocess

import pytest
from click.testing import CliRunner

import foreman


@pytest.fixture
def commands(monkeypatch, inst):
    """Record host commands; every command succeeds."""

    calls = []

    def fake_run(args, **kwds):
        calls.append(list(args))
        stdout = f"{inst.service_name}.service {inst.service_name}.socket"
        return subprocess.CompletedProcess(args, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(foreman.subprocess, "run", fake_run)
    monkeypatch.setattr(foreman.time, "sleep", lambda s: None)
    return calls


def test_system_dirs(inst, no_chown):
    foreman.system_dirs(inst, foreman.MINECRAFT_DIRS)

    for sub in foreman.MINECRAFT_DIRS:
        assert (inst.install_dir / sub).is_dir()
    assert (inst.install_dir / "logs" / "latest.log").is_file()
    assert stat.S_IMODE(inst.install_dir.stat().st_mode) == 0o750
    assert stat.S_IMODE((inst.install_dir / "logs").stat().st_mode) == 0o755
    assert inst.install_dir / "logs" / "latest.log" in no_chown


def test_server_properties(inst, no_chown):
    inst.install_dir.mkdir()
    opts = foreman.ServerOptions(port=25570, world_name="survival", motd="Hello there")
    path = foreman.server_properties_write(inst, opts)

    props = foreman.props_read(path)
    assert props["server-port"] == "25570"
    assert props["level-name"] == "survival"
    assert props["motd"] == "Hello there"
    assert props["online-mode"] == "true"
    assert stat.S_IMODE(path.stat().st_mode) == 0o640

    # Existing files are left alone.
    assert foreman.server_properties_write(inst, opts._replace(port=1)) is None
    assert foreman.props_read(path)["server-port"] == "25570"


def test_eula(inst, no_chown):
    inst.install_dir.mkdir()
    path = foreman.eula_write(inst)

    assert foreman.props_read(path) == {"eula": "true"}
    assert "minecraft_eula" in path.read_text()


def test_hytale_config(tmp_path, no_chown):
    inst = foreman.installation_new("1", "hytale", tmp_path)
    path = foreman.hytale_config_write(inst, "My Server", "Welcome", 50)

    config = json.loads(path.read_text())
    assert config["ServerName"] == "My Server"
    assert config["MaxPlayers"] == 50
    assert config["Defaults"] == {"World": "default", "GameMode": "Adventure"}


@pytest.mark.parametrize("banner, expected", [
    ('openjdk version "21.0.4" 2024-07-16', 21),
    ('openjdk version "25" 2025-09-16', 25),
    ('java version "1.8.0_392"', 8),
    ("garbage", None),
])
def test_java_version(monkeypatch, banner, expected):
    def fake_run(args, **kwds):
        return subprocess.CompletedProcess(args, 0, stdout="", stderr=banner + "\nOpenJDK Runtime\n")

    monkeypatch.setattr(foreman.subprocess, "run", fake_run)
    assert foreman.java_version("/usr/bin/java") == expected


def test_java_version_missing(monkeypatch):
    def fake_run(args, **kwds):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(foreman.subprocess, "run", fake_run)
    assert foreman.java_version("/nope/java") is None


def test_java_accepts():
    assert foreman.java_accepts(21, 17, False)
    assert not foreman.java_accepts(21, 25, True)
    assert not foreman.java_accepts(26, 25, True)
    assert foreman.java_accepts(25, 25, True)
    assert not foreman.java_accepts(None, 17, False)


def unit_files(inst):
    inst.unit_root.mkdir(parents=True)
    inst.run_root.mkdir(parents=True)
    inst.service_unit.write_text("[Unit]\n")
    inst.socket_unit.write_text("[Unit]\n")
    os.mkfifo(inst.runtime_socket)
    (inst.install_dir / "worlds").mkdir(parents=True)


def test_uninstall_keep_files(inst, commands):
    unit_files(inst)
    foreman.uninstall(inst, keep_files=True)

    assert not inst.service_unit.exists()
    assert not inst.socket_unit.exists()
    assert not inst.runtime_socket.exists()
    assert (inst.install_dir / "worlds").is_dir()
    assert ["systemctl", "stop", "minecraft-server-test.service"] in commands
    assert ["systemctl", "stop", "minecraft-server-test.socket"] in commands
    assert ["pkill", "-9", "-u", "minecraft-srv"] in commands
    assert not any(c[0] in ("userdel", "groupdel") for c in commands)


def test_uninstall_everything(inst, commands):
    unit_files(inst)
    foreman.uninstall(inst)

    assert not inst.install_dir.exists()
    assert ["userdel", "-r", "minecraft-srv"] in commands
    assert ["groupdel", "minecraft-srv"] in commands
    stops = [c for c in commands if c[:2] == ["systemctl", "stop"]]
    assert stops[0][-1].endswith(".service")


def test_systemd_enable(inst, commands):
    foreman.systemd_enable(inst)
    assert commands == [
        ["systemctl", "daemon-reload"],
        ["systemctl", "enable", "minecraft-server-test.service"],
        ["systemctl", "enable", "minecraft-server-test.socket"],
        ["systemctl", "start", "minecraft-server-test.socket"]]


def test_console_send(inst):
    inst.run_root.mkdir(parents=True)
    inst.runtime_socket.write_text("")
    foreman.console_send(inst, "say hello")
    assert inst.runtime_socket.read_text() == "say hello\n"


def test_console_send_missing_socket(inst):
    with pytest.raises(foreman.ForemanError, match="not found"):
        foreman.console_send(inst, "stop")


def test_config_overrides(tmp_path):
    path = tmp_path / "foreman.toml"
    path.write_text(
        '[foreman.hosts]\npapermc = "https://mirror.example.org/v2/"\n'
        '[foreman.auth]\nprofile_name = "steve"\n'
        '[foreman.download]\nretries = 5\n')

    cfg = foreman.cfg_load(path)
    fm  = foreman.foreman_new(cfg)
    try:
        assert fm.hosts["papermc"] == "https://mirror.example.org/v2"
        assert fm.hosts["purpur"] == foreman.HOSTS_DEFAULT["purpur"]
        assert fm.auth.profile_name == "steve"
        assert fm.retries == 5
    finally:
        fm.client.close()


def test_cfg_opt():
    cfg = {"foreman": {"paths": {"units": "/tmp/units"}}}
    assert foreman.cfg_opt(cfg, "foreman.paths.units") == "/tmp/units"
    assert foreman.cfg_opt(cfg, "foreman.paths.run", None) is None
    with pytest.raises(KeyError):
        foreman.cfg_opt(cfg, "foreman.hosts")


def test_cli_minecraft_rejects_hytale(use_fm, router):
    res = CliRunner().invoke(foreman.main_cli, ["minecraft", "install", "-t", "hytale"])
    assert res.exit_code != 0
    assert "foreman hytale install" in res.output
    assert router.calls == []


def test_cli_uninstall(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(foreman, "uninstall", lambda inst, keep: seen.append((inst, keep)))

    res = CliRunner().invoke(
        foreman.main_cli,
        ["hytale", "uninstall", "--keep-files"],
        env={"INSTANCE_ID": "7", "INSTALL_DIR": str(tmp_path)})
    assert res.exit_code == 0, res.output
    inst, keep = seen[0]
    assert inst.service_name == "hytale-server-7"
    assert inst.install_dir == tmp_path
    assert keep is True
