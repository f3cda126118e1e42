import pathlib
import shlex

import pytest

import foreman


def test_unit_render_ordering():
    text = foreman.unit_render((
        ("Unit", (("Description", "x"), ("After", "network.target"))),
        ("Install", (("WantedBy", "multi-user.target"),)),
    ))
    assert text == (
        "[Unit]\n"
        "Description=x\n"
        "After=network.target\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n")


def test_unit_render_rejects_newlines():
    with pytest.raises(ValueError, match="ExecStart"):
        foreman.unit_render((("Service", (("ExecStart", "java\nExecStartPre=/bin/sh"),)),))


def test_minecraft_units(inst):
    cfg = foreman.unit_config_new(
        inst,
        "/usr/bin/java -Xmx2048M -Xms2048M -jar paper-server.jar nogui",
        description="Minecraft Server (paper)",
        documentation="https://minecraft.wiki/w/Server")
    service = foreman.unit_service_text(cfg).splitlines()
    socket  = foreman.unit_socket_text(cfg).splitlines()

    assert "User=minecraft-srv" in service
    assert "Sockets=minecraft-server-test.socket" in service
    assert "StandardInput=socket" in service
    assert "MemoryMax=4G" in service
    assert "CPUQuota=200%" in service
    assert "TasksMax=512" in service
    assert "RestartSec=10" in service
    assert f"WorkingDirectory={inst.install_dir}" in service
    assert "ExecStart=/usr/bin/java -Xmx2048M -Xms2048M -jar paper-server.jar nogui" in service

    assert f"ListenFIFO={inst.runtime_socket}" in socket
    assert "SocketMode=0660" in socket
    assert "RemoveOnStop=true" in socket
    assert "BindsTo=minecraft-server-test.service" in socket


def test_hytale_profile(tmp_path):
    inst = foreman.installation_new(
        "1", "hytale", tmp_path, unit_root=tmp_path, run_root=tmp_path)
    cfg = foreman.unit_config_new(inst, "foreman hytale launch", description="d", documentation="u")
    service = foreman.unit_service_text(cfg).splitlines()

    assert inst.service_name == "hytale-server-1"
    assert inst.user == "hytale-srv"
    assert "MemoryMax=18G" in service
    assert "CPUQuota=400%" in service
    assert "TimeoutStopSec=60" in service
    assert "RestartSec=1800" in service


def test_installation_defaults():
    inst = foreman.installation_new("survival", foreman.Product.Minecraft)
    assert inst.install_dir == pathlib.Path("/opt/minecraft-survival")
    assert inst.service_unit == pathlib.Path("/etc/systemd/system/minecraft-server-survival.service")
    assert inst.runtime_socket == pathlib.Path("/run/minecraft-server-survival.socket")


@pytest.mark.parametrize("flavor, expected", [
    ("paper", "java -Xmx1024M -Xms1024M -XX:+UseG1GC -XX:MaxGCPauseMillis=200 -jar server.jar nogui"),
    ("velocity", "java -Xmx1024M -Xms1024M -jar server.jar"),
    ("forge", "java -Xmx1024M -Xms1024M -XX:+UseG1GC @libraries/args.txt nogui"),
])
def test_minecraft_exec_start(flavor, expected):
    opts = foreman.ServerOptions(heap_mb=1024)
    cmd  = foreman.minecraft_exec_start(
        foreman.flavor_new(flavor), "java", pathlib.Path("server.jar"), opts, "@libraries/args.txt")
    assert cmd == expected


def test_minecraft_exec_start_java_flags():
    opts = foreman.ServerOptions(java_flags="-Xmx8G")
    cmd  = foreman.minecraft_exec_start(foreman.Flavor.Geyser, "java", pathlib.Path("g.jar"), opts)
    assert cmd == "java -Xmx8G -jar g.jar"


def test_hytale_java_args(tmp_path):
    inst = foreman.installation_new("1", "hytale", tmp_path)
    args = foreman.hytale_java_args(
        "/usr/lib/jvm/temurin-25/bin/java", 4096, inst, foreman.Session("s", "i"))

    assert args[0] == "/usr/lib/jvm/temurin-25/bin/java"
    assert "-XX:+UseShenandoahGC" in args
    assert args[args.index("-jar") + 1] == str(tmp_path / "AppFiles" / "Server" / "HytaleServer.jar")
    assert args[-4:] == ["--session-token", "s", "--identity-token", "i"]


def test_hytale_exec_start(tmp_path):
    inst = foreman.installation_new("1", "hytale", tmp_path)
    cmd  = foreman.hytale_exec_start(inst, "/opt/java", 4096, "/usr/local/bin/foreman")
    assert cmd.startswith("/usr/local/bin/foreman hytale launch --instance-id 1")
    assert cmd.endswith("--java-bin /opt/java --heap-mb 4096")


def test_systemd_write(inst):
    cfg = foreman.unit_config_new(inst, "java -jar x.jar", description="d", documentation="u")
    foreman.systemd_write(inst, cfg)

    assert inst.service_unit.read_text() == foreman.unit_service_text(cfg)
    assert inst.socket_unit.read_text() == foreman.unit_socket_text(cfg)


def test_hytale_exec_start_quotes_paths(tmp_path):
    inst = foreman.installation_new("1", "hytale", tmp_path / "game servers")
    cmd  = foreman.hytale_exec_start(inst, "/opt/java 25/bin/java", 4096, "/usr/local/bin/foreman")
    args = shlex.split(cmd)

    assert args[args.index("--install-dir") + 1] == str(tmp_path / "game servers")
    assert args[args.index("--java-bin") + 1] == "/opt/java 25/bin/java"
