#!/usr/bin/env python3
"""
foreman.py
-------------------
Basic CLI for provisioning game server services.
-------------------
Installs, configures and removes Minecraft and
Hytale dedicated servers as systemd services.
"""

import contextlib
import enum
import hashlib
import json
import os
import pathlib
import re
import shlex
import shutil
import subprocess
import textwrap
import threading
import time
import tomllib
import typing
import zipfile

import click, httpx, jproperties, wget

# -----------------------------------------------
# Common script objects.
# -----------------------------------------------

T = typing.TypeVar("T")
Unset = type("Unset", (int,), {})
Flavor = None
FlavorT = str | Flavor
Version = None
VersionT = str | tuple[int, ...] | Version

LATEST = "latest"

REGEX_BUILD_NUMBER    = re.compile(r"^[0-9]+$")
REGEX_JAVA_VERSION    = re.compile(r"version \"(\d+)(?:\.(\d+))?")
REGEX_STABLE_VERSION  = re.compile(r"^[0-9]+\.[0-9]+(\.[0-9]+)?$")
REGEX_URL_INVALID     = re.compile(r"[^a-zA-Z0-9./_:-]")
REGEX_URL_SCHEME      = re.compile(r"^https?://")
REGEX_WHITESPACE      = re.compile(r"\s")

HOSTS_DEFAULT = {
    "papermc":     "https://api.papermc.io/v2",
    "purpur":      "https://api.purpurmc.org/v2",
    "fabric":      "https://meta.fabricmc.net/v2",
    "forge":       "https://files.minecraftforge.net/net/minecraftforge/forge",
    "forge_maven": "https://maven.minecraftforge.net/net/minecraftforge/forge",
    "geyser":      "https://download.geysermc.org/v2",
    "mcjars":      "https://mcjars.app/api",
    "hytale":      "https://downloader.hytale.com",
    "adoptium":    "https://packages.adoptium.net/artifactory",
}

AUTH_DEFAULT = {
    "client_id":    "hytale-server",
    "scope":        "openid offline auth:server",
    "device_url":   "https://oauth.accounts.hytale.com/oauth2/device/auth",
    "token_url":    "https://oauth.accounts.hytale.com/oauth2/token",
    "profiles_url": "https://account-data.hytale.com/my-account/get-profiles",
    "session_url":  "https://sessions.hytale.com/game-session/new",
    "profile_name": "",
}

GRANT_DEVICE_CODE = "urn:ietf:params:oauth:grant-type:device_code"
GRANT_REFRESH     = "refresh_token"

HYTALE_AUTH_CACHE     = ".hytale-server-auth.json"
HYTALE_DOWNLOADER_EXE = "hytale-downloader-linux-amd64"
HYTALE_DOWNLOADER_ZIP = "hytale-downloader.zip"
HYTALE_GAME_ZIP       = "hytale-game.zip"

EULA_COMMENT = (
    "Minecraft EULA - see https://account.mojang.com/documents/minecraft_eula")

USER_AGENT = "foreman/1.0 (+systemd game server provisioner)"


class ForemanError(click.ClickException):
    """
    Fatal provisioning error. Reported by click
    with a non-zero exit status.
    """


class UnsupportedFlavor(ForemanError):
    """Flavor is not one of `Flavor`."""


class MetadataFetchFailure(ForemanError):
    """A build API could not be reached or parsed."""


class VersionResolutionFailure(ForemanError):
    """No concrete version or build could be chosen."""


class InvalidURL(ForemanError):
    """Download URL failed validation."""


class DownloadFailure(ForemanError):
    """Artifact transfer exhausted its retries."""


class ChecksumMismatch(ForemanError):
    """Artifact digest differs from the expected one."""


class AuthorizationError(ForemanError):
    """OAuth endpoint returned a hard error."""


class AuthorizationCancelled(AuthorizationError):
    """Device code polling was cancelled."""


class EmptyProfileSet(ForemanError):
    """Account owns no game profiles."""


class ProfileNotFound(ForemanError):
    """Requested profile is not owned by the account."""


class MalformedSessionResponse(ForemanError):
    """Session endpoint returned an unusable body."""


class InvalidOrIncompleteCache(ForemanError):
    """Auth token cache cannot be trusted."""


class ProvisionError(ForemanError):
    """A host level provisioning step failed."""


class Product(enum.StrEnum):
    """Game product being provisioned."""

    Minecraft = enum.auto()
    Hytale    = enum.auto()


class Flavor(enum.StrEnum):
    """Named game server distribution."""

    Paper      = enum.auto()
    Fabric     = enum.auto()
    Forge      = enum.auto()
    Geyser     = enum.auto()
    Velocity   = enum.auto()
    Purpur     = enum.auto()
    Pufferfish = enum.auto()
    Folia      = enum.auto()
    Hytale     = enum.auto()

FlavorPaperMC = (Flavor.Paper, Flavor.Velocity, Flavor.Folia)
FlavorProxy   = (Flavor.Geyser, Flavor.Velocity)

FLAVOR_JARS = {
    Flavor.Paper:    "paper-server.jar",
    Flavor.Fabric:   "fabric-server.jar",
    Flavor.Forge:    "forge-installer.jar",
    Flavor.Geyser:   "geyser-standalone.jar",
    Flavor.Velocity: "velocity.jar",
}

JAVA_REQUIRED = {
    Flavor.Paper:      21,
    Flavor.Fabric:     21,
    Flavor.Forge:      17,
    Flavor.Geyser:     17,
    Flavor.Velocity:   17,
    Flavor.Purpur:     21,
    Flavor.Pufferfish: 21,
    Flavor.Folia:      21,
    Flavor.Hytale:     25,
}

MINECRAFT_DIRS = ("worlds", "logs", "plugins", "mods", "config")
HYTALE_DIRS    = ("AppFiles", "AppFiles/Server", "logs")

UNIT_PROFILES = {
    Product.Minecraft: dict(
        memory_max="4G",
        cpu_quota="200%",
        tasks_max=512,
        timeout_stop=30,
        restart_sec=10),
    Product.Hytale: dict(
        memory_max="18G",
        cpu_quota="400%",
        tasks_max=1024,
        timeout_stop=60,
        restart_sec=1800),
}

HYTALE_JAVA_XX = (
    "MaxMetaspaceSize=512M",
    "+UnlockExperimentalVMOptions",
    "+UseShenandoahGC",
    "ShenandoahGCHeuristics=compact",
    "ShenandoahUncommitDelay=30000",
    "ShenandoahAllocationThreshold=15",
    "ShenandoahGuaranteedGCInterval=30000",
    "+PerfDisableSharedMem",
    "+DisableExplicitGC",
    "+ParallelRefProcEnabled",
    "ParallelGCThreads=4",
    "ConcGCThreads=2",
    "+AlwaysPreTouch")


class Version(typing.NamedTuple):
    """Numeric release version."""

    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return ".".join((str(i) for i in self))


class BuildDescriptor(typing.NamedTuple):
    """What to resolve. Never stored."""

    flavor:  Flavor
    version: str
    build:   str

    def __str__(self):
        return f"{self.flavor}:{self.version}(build={self.build!r})"


class DownloadDescriptor(typing.NamedTuple):
    """Where an artifact lives and where it goes."""

    url:      str
    checksum: str | None = None
    dest:     pathlib.Path | None = None


class Installation(typing.NamedTuple):
    """A single provisioned server instance."""

    instance_id: str
    product:     Product
    install_dir: pathlib.Path
    user:        str
    group:       str
    unit_root:   pathlib.Path
    run_root:    pathlib.Path

    @property
    def service_name(self) -> str:
        return f"{self.product}-server-{self.instance_id}"

    @property
    def service_unit(self) -> pathlib.Path:
        return self.unit_root / f"{self.service_name}.service"

    @property
    def socket_unit(self) -> pathlib.Path:
        return self.unit_root / f"{self.service_name}.socket"

    @property
    def runtime_socket(self) -> pathlib.Path:
        return self.run_root / f"{self.service_name}.socket"


class ServerOptions(typing.NamedTuple):
    """Per install server settings."""

    heap_mb:     int = 2048
    java_flags:  str | None = None
    port:        int = 25565
    world_name:  str = "world"
    max_players: int = 20
    motd:        str = "A Minecraft Server"
    eula:        bool = True
    url:         str | None = None
    checksum:    str | None = None
    api:         str = "native"


class AuthSettings(typing.NamedTuple):
    """OAuth device flow endpoints."""

    client_id:    str
    scope:        str
    device_url:   str
    token_url:    str
    profiles_url: str
    session_url:  str
    profile_name: str


class AuthCache(typing.NamedTuple):
    """Persisted long-lived credential."""

    refresh_token: str
    profile_uuid:  str
    timestamp:     int


class Tokens(typing.NamedTuple):
    access_token:  str
    refresh_token: str


class Profile(typing.NamedTuple):
    uuid:     str
    username: str


class Session(typing.NamedTuple):
    """Short-lived game session handed to the server."""

    session_token:  str
    identity_token: str


class Foreman(typing.NamedTuple):
    """
    Context passed to every resolver, download
    and auth operation.
    """

    client:  httpx.Client
    hosts:   typing.Mapping[str, str]
    auth:    AuthSettings
    cancel:  threading.Event
    retries: int = 3
    backoff: float = 2.0


class UnitConfig(typing.NamedTuple):
    """Values rendered into a service/socket pair."""

    description:    str
    documentation:  str
    service_name:   str
    user:           str
    group:          str
    working_dir:    pathlib.Path
    exec_start:     str
    runtime_socket: pathlib.Path
    memory_max:     str = "4G"
    cpu_quota:      str = "200%"
    tasks_max:      int = 512
    timeout_stop:   int = 30
    restart_sec:    int = 10
    listen:         str = "ListenFIFO"


UnitSections = typing.Sequence[
    tuple[str, typing.Sequence[tuple[str, typing.Any]]]]


# -----------------------------------------------
# Common script utilities.
# -----------------------------------------------

def cfg_load(path: pathlib.Path | str | None) -> typing.Mapping:
    """Loads the foreman configuration."""

    if not path:
        return {}
    return tomllib.loads(pathlib.Path(path).read_text())


def cfg_opt(
    cfg: typing.Mapping,
    name: str,
    default: T | None = Unset) -> typing.Any:
    """
    Perform a lookup of some dotted value in the
    foreman config.
    """

    node = cfg
    for part in name.split("."):
        if not isinstance(node, typing.Mapping) or part not in node:
            if default is Unset:
                raise KeyError(f"{part!r} does not exist in {name!r}")
            return default
        node = node[part]

    return node


def file_size(path: pathlib.Path) -> str:
    """Human readable size of a file."""

    size = float(path.stat().st_size)
    for unit in ("B", "K", "M", "G"):
        if size < 1024 or unit == "G":
            break
        size /= 1024
    return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"


@contextlib.contextmanager
def from_directory(path: pathlib.Path):
    """
    Perform some operation from the given
    directory.
    """

    origin = pathlib.Path.cwd()
    try:
        os.chdir(path)
        yield
    finally:
        os.chdir(origin)


def flavor_new(flavor: FlavorT) -> Flavor:
    """Return a `Flavor` instance."""

    if isinstance(flavor, Flavor):
        return flavor
    if isinstance(flavor, str):
        try:
            return Flavor(flavor.strip().lower())
        except ValueError:
            supported = ", ".join(str(f) for f in Flavor)
            raise UnsupportedFlavor(
                f"unsupported flavor {flavor!r}. Supported: {supported}"
            ) from None

    raise TypeError(f"Unsupported conversion from {flavor!r} to {Flavor}")


def build_new(
    flavor: FlavorT,
    version: str | None = None,
    build: str | int | None = None) -> BuildDescriptor:
    """Constructs a new `BuildDescriptor`."""

    version = str(version or LATEST).strip()
    build   = str(build or LATEST).strip()
    return BuildDescriptor(flavor_new(flavor), version, build)


def installation_new(
    instance_id: str,
    product: Product | str,
    install_dir: pathlib.Path | str | None = None,
    *,
    user: str | None = None,
    group: str | None = None,
    unit_root: pathlib.Path | str | None = None,
    run_root: pathlib.Path | str | None = None) -> Installation:
    """Create new `Installation` instance."""

    product     = Product(product)
    instance_id = (instance_id or "default").strip()
    install_dir = install_dir or f"/opt/{product}-{instance_id}"
    user        = user or f"{product}-srv"
    group       = group or user

    return Installation(
        instance_id,
        product,
        pathlib.Path(install_dir),
        user,
        group,
        pathlib.Path(unit_root or "/etc/systemd/system"),
        pathlib.Path(run_root or "/run"))


def version_isstable(version: typing.Any) -> bool:
    """
    Whether a version identifier is a plain
    numeric release.
    """

    return isinstance(version, str) and bool(REGEX_STABLE_VERSION.match(version))


def version_latest(candidates: typing.Iterable[typing.Any]) -> str | None:
    """
    Most recent stable version from candidates.
    Pre-releases and snapshots are never chosen.
    """

    stable = [c for c in candidates if version_isstable(c)]
    if not stable:
        return None
    return sorted(stable, key=version_new, reverse=True)[0]


def version_new(version: VersionT | None = None) -> Version:
    """Create a new `Version` instance."""

    if not version:
        return Version(-1, 0, 0)
    if isinstance(version, Version):
        return version
    if isinstance(version, str):
        parts = version.split(".")
        if not all(p.isdigit() for p in parts) or len(parts) > 3:
            raise ValueError(f"{version!r} is not a numeric version")
        return Version(*map(int, parts + ["0"] * (3 - len(parts))))
    if isinstance(version, typing.Iterable):
        return Version(*version) #type: ignore

    raise TypeError(f"Unsupported conversion from {version!r} to {Version}")


def which(name: str) -> typing.Generator[pathlib.Path, None, None]:
    """
    Locate some binary on PATH. Returns all
    executable paths.
    """

    paths = map(pathlib.Path, os.environ.get("PATH", "").split(":"))
    found = (p / name for p in paths if p.is_dir())

    return (f for f in found if f.is_file() and os.access(str(f), os.X_OK))


# -----------------------------------------------
# Host command utilities.
# -----------------------------------------------

def run(
    *args: str,
    quiet: bool | None = None,
    **kwds) -> subprocess.CompletedProcess:
    """Run a host command. Non-zero exit is fatal."""

    try:
        return subprocess.run(
            args, check=True, text=True, capture_output=bool(quiet), **kwds)
    except FileNotFoundError as err:
        raise ProvisionError(f"command not found: {args[0]}") from err
    except subprocess.CalledProcessError as err:
        raise ProvisionError(
            f"{' '.join(args)} exited with status {err.returncode}") from err


def run_ok(*args: str, **kwds) -> bool:
    """Run a host command on a best-effort basis."""

    kwds.setdefault("capture_output", True)
    try:
        return subprocess.run(args, text=True, **kwds).returncode == 0
    except OSError:
        return False


def system_account(inst: Installation) -> None:
    """Create the dedicated service user and group."""

    click.echo(f"[1] Setting up dedicated user: {inst.user}")
    inst.install_dir.mkdir(parents=True, exist_ok=True)
    if run_ok("id", inst.user):
        click.echo(f"    ✓ User {inst.user} already exists")
        return

    run_ok("groupadd", "-r", inst.group)
    run_ok(
        "useradd", "-r",
        "-g", inst.group,
        "-d", str(inst.install_dir),
        "-s", "/bin/false",
        "-c", f"{inst.product.title()} Server",
        inst.user)

    if not run_ok("id", inst.user):
        raise ProvisionError(f"failed to create user {inst.user}")
    click.echo(f"    ✓ Created user {inst.user}")


def system_chown(
    inst: Installation,
    path: pathlib.Path,
    recursive: bool | None = None) -> None:
    """Hand a path to the service account."""

    shutil.chown(path, inst.user, inst.group)
    if not (recursive and path.is_dir()):
        return

    for root, dirs, fls in os.walk(path):
        for name in (*dirs, *fls):
            p = pathlib.Path(root) / name
            if not p.is_symlink():
                shutil.chown(p, inst.user, inst.group)


def system_dirs(inst: Installation, subdirs: typing.Sequence[str]) -> None:
    """
    Create the directory layout with restrictive
    permissions.
    """

    click.echo("[2] Setting up directories with secure permissions")
    root = inst.install_dir
    for d in (root, *(root / s for s in subdirs), root / "logs"):
        d.mkdir(parents=True, exist_ok=True)
    (root / "logs" / "latest.log").touch()

    # Logs stay world readable for debugging.
    root.chmod(0o750)
    (root / "logs").chmod(0o755)
    system_chown(inst, root, recursive=True)
    click.echo("    ✓ Directories created")


def system_file(
    inst: Installation,
    path: pathlib.Path,
    text: str | None = None,
    mode: int = 0o640) -> pathlib.Path:
    """Write a file owned by the service account."""

    if text is not None:
        path.write_text(text)
    system_chown(inst, path)
    path.chmod(mode)
    return path


# -----------------------------------------------
# Java runtime utilities.
# -----------------------------------------------

def java_version(binary: str | pathlib.Path = "java") -> int | None:
    """Major version reported by a java binary."""

    try:
        res = subprocess.run(
            [str(binary), "-version"],
            capture_output=True,
            text=True,
            timeout=30)
    except (OSError, subprocess.SubprocessError):
        return None

    lines = (res.stderr or res.stdout or "").splitlines()
    found = REGEX_JAVA_VERSION.search(lines[0]) if lines else None
    if not found:
        return None

    major = int(found[1])
    # Legacy "1.8.0" style numbering.
    if major == 1 and found[2]:
        major = int(found[2])
    return major


def java_accepts(found: int | None, required: int, exact: bool | None) -> bool:
    if not found:
        return False
    return found == required if exact else found >= required


def java_candidates() -> typing.Generator[pathlib.Path, None, None]:
    """Every java binary known to the host."""

    yield from which("java")

    res = None
    if next(which("update-alternatives"), None):
        res = subprocess.run(
            ["update-alternatives", "--list", "java"],
            capture_output=True,
            text=True)
    if res and res.returncode == 0:
        yield from (pathlib.Path(l.strip()) for l in res.stdout.splitlines() if l.strip())

    jvm = pathlib.Path("/usr/lib/jvm")
    if jvm.is_dir():
        yield from sorted(jvm.glob("*/bin/java"))
        yield from sorted(jvm.glob("*/*/bin/java"))


def java_ensure(fm: Foreman, required: int, exact: bool | None = None) -> None:
    """Install a Temurin JRE unless a usable java is present."""

    found = java_version()
    if java_accepts(found, required, exact):
        click.echo(f"    ✓ Found Java {found}")
        return

    click.echo(
        f"    ⚠ Java {required} not detected - installing Temurin {required} JRE")
    java_install(fm, required, exact)
    click.echo(f"    ✓ Java {required} installed")


def java_install(fm: Foreman, required: int, exact: bool | None = None) -> None:
    """Install a JRE through the host package manager."""

    repo = fm.hosts["adoptium"]
    if next(which("apt-get"), None):
        keyring = pathlib.Path("/usr/share/keyrings/adoptium.gpg")
        keyring.parent.mkdir(parents=True, exist_ok=True)
        if not keyring.exists():
            try:
                res = fm.client.get(f"{repo}/api/gpg/key/public")
                res.raise_for_status()
            except httpx.HTTPError as err:
                raise ProvisionError(f"failed to fetch Adoptium key <{err}>") from err
            subprocess.run(
                ["gpg", "--dearmor", "-o", str(keyring)],
                input=res.content,
                check=True)

        pathlib.Path("/etc/apt/sources.list.d/adoptium.list").write_text(
            f"deb [signed-by={keyring}] {repo}/deb bookworm main\n")
        run("apt-get", "update", "-y")

        packages = [f"temurin-{required}-jre"]
        if not exact:
            packages += [f"openjdk-{required}-jre-headless", "openjdk-17-jre-headless"]
        if any(run_ok("apt-get", "install", "-y", p) for p in packages):
            return

    elif next(which("yum"), None):
        if exact:
            pathlib.Path("/etc/yum.repos.d/adoptium.repo").write_text(textwrap.dedent(f"""\
            [Adoptium]
            name=Adoptium
            baseurl={repo}/rpm/centos/$releasever/$basearch
            enabled=1
            gpgcheck=1
            gpgkey={repo}/api/gpg/key/public
            """))
            packages = [f"temurin-{required}-jre"]
        else:
            packages = [f"java-{required}-openjdk-headless", "java-17-openjdk-headless"]
        if any(run_ok("yum", "install", "-y", p) for p in packages):
            return

    raise ProvisionError(f"cannot install Java {required} automatically")


def java_resolve(required: int, exact: bool | None = None) -> str:
    """
    Locate a java binary that satisfies the
    requirement.
    """

    seen = set()
    for candidate in java_candidates():
        if candidate in seen:
            continue
        seen.add(candidate)
        if not os.access(str(candidate), os.X_OK):
            continue
        if java_accepts(java_version(candidate), required, exact):
            return str(candidate)

    raise ProvisionError(
        f"Java {required} binary not found. "
        f"Install Temurin {required} and ensure it is available")


# -----------------------------------------------
# Build resolution utilities.
# -----------------------------------------------

def http_json(fm: Foreman, url: str, **kwds) -> typing.Any:
    """Fetch and decode a JSON document."""

    click.echo(f"    → Fetching {url}", err=True)
    try:
        res = fm.client.get(url, **kwds)
        res.raise_for_status()
    except httpx.HTTPError as err:
        raise MetadataFetchFailure(f"failed to fetch {url} <{err}>") from err

    try:
        return res.json()
    except ValueError as err:
        raise MetadataFetchFailure(
            f"{url} returned invalid JSON: {res.text[:200]!r}") from err


def json_opt(doc: typing.Any, *keys: str | int) -> typing.Any:
    """Walk nested JSON values. Missing keys give None."""

    node = doc
    for key in keys:
        if isinstance(node, typing.Mapping):
            node = node.get(key)
        elif isinstance(node, list) and isinstance(key, int) and -len(node) <= key < len(node):
            node = node[key]
        else:
            return None
    return node


def json_get(doc: typing.Any, *keys: str | int, source: str = "") -> typing.Any:
    """Walk nested JSON values. Missing or empty values are fatal."""

    node = json_opt(doc, *keys)
    if node is None or node == "" or node == [] or node == {}:
        field = ".".join(map(str, keys)) or "document"
        raise VersionResolutionFailure(
            f"{source}: field {field!r} is missing or empty")
    return node


def build_check(build: typing.Any, bd: BuildDescriptor) -> str:
    """Builds must be plain numbers."""

    build = str(build).strip()
    if not REGEX_BUILD_NUMBER.match(build):
        raise VersionResolutionFailure(
            f"failed to get valid build number for {bd.flavor} {bd.version} (got: {build!r})")
    return build


def build_pick(builds: typing.Any, source: str) -> str:
    """Highest numbered build from a listing."""

    if not isinstance(builds, list):
        raise VersionResolutionFailure(f"{source}: build listing is malformed")

    numbers = [int(b) for b in builds if REGEX_BUILD_NUMBER.match(str(b))]
    if not numbers:
        raise VersionResolutionFailure(f"{source}: no builds available")
    return str(max(numbers))


def version_pick(candidates: typing.Any, source: str) -> str:
    """Resolve "latest" against a version listing."""

    if not isinstance(candidates, (list, tuple, set)):
        raise VersionResolutionFailure(f"{source}: version listing is malformed")

    version = version_latest(candidates)
    if not version:
        raise VersionResolutionFailure(
            f"{source}: no stable version among {len(candidates)} candidates")
    click.echo(f"    → Resolved latest version to {version}", err=True)
    return version


def url_validate(url: str | None, strict: bool | None = True) -> str:
    """
    Validate a download URL before use. Strict
    mode also rejects characters a build API
    should never emit.
    """

    url = (url or "").strip()
    if not url or not REGEX_URL_SCHEME.match(url):
        raise InvalidURL(f"invalid or empty download URL: {url!r}")
    if REGEX_WHITESPACE.search(url):
        raise InvalidURL(f"download URL contains whitespace: {url!r}")
    if strict and REGEX_URL_INVALID.search(url):
        raise InvalidURL(f"invalid characters in download URL: {url!r}")
    return url


def resolve(
    fm: Foreman,
    bd: BuildDescriptor,
    api: str | None = None) -> DownloadDescriptor:
    """
    Turn a `BuildDescriptor` into a concrete
    artifact URL.
    """

    click.echo(f"    → Resolving {bd}", err=True)
    if bd.flavor is Flavor.Hytale:
        url = resolve_hytale(fm, bd)
    elif api == "mcjars" or bd.flavor is Flavor.Pufferfish:
        url = resolve_mcjars(fm, bd)
    else:
        url = RESOLVERS[bd.flavor](fm, bd)

    return DownloadDescriptor(url_validate(url))


def resolve_fabric(fm: Foreman, bd: BuildDescriptor) -> str:
    """
    Fabric server launcher. The build selects a
    loader version.
    """

    meta   = fm.hosts["fabric"]
    source = f"{meta}/versions/game"
    games  = json_get(http_json(fm, source), source=source)
    if not isinstance(games, list):
        raise VersionResolutionFailure(f"{source}: version listing is malformed")

    names   = [json_opt(g, "version") for g in games]
    version = bd.version
    if version == LATEST:
        version = version_pick(names, source)
    elif version not in names:
        raise VersionResolutionFailure(
            f"fabric does not support Minecraft version {version}")

    loader = bd.build
    if loader == LATEST:
        loader = resolve_fabric_stable(fm, f"{meta}/versions/loader")
    installer = resolve_fabric_stable(fm, f"{meta}/versions/installer")

    return f"{meta}/versions/loader/{version}/{loader}/{installer}/server/jar"


def resolve_fabric_stable(fm: Foreman, source: str) -> str:
    """First stable entry of a fabric meta listing."""

    entries = http_json(fm, source)
    if isinstance(entries, list):
        for entry in entries:
            if json_opt(entry, "stable") is True and json_opt(entry, "version"):
                return str(entry["version"]).strip()

    raise VersionResolutionFailure(f"{source}: no stable release available")


def resolve_forge(fm: Foreman, bd: BuildDescriptor) -> str:
    """
    Forge installer. Prefers the "latest"
    promotion and falls back to "recommended".
    """

    source = f"{fm.hosts['forge']}/promotions_slim.json"
    promos = json_get(http_json(fm, source), "promos", source=source)
    if not isinstance(promos, typing.Mapping):
        raise VersionResolutionFailure(f"{source}: promotions are malformed")

    version = bd.version
    if version == LATEST:
        version = version_pick(
            list({k.rsplit("-", 1)[0] for k in promos}), source)

    forge = bd.build
    if forge == LATEST:
        forge = (
            promos.get(f"{version}-latest")
            or promos.get(f"{version}-recommended"))
    if not forge or not isinstance(forge, str):
        raise VersionResolutionFailure(
            f"no Forge version found for Minecraft {version}")

    full = f"{version}-{forge.strip()}"
    return f"{fm.hosts['forge_maven']}/{full}/forge-{full}-installer.jar"


def resolve_geyser(fm: Foreman, bd: BuildDescriptor) -> str:
    """
    Geyser standalone. Geyser releases are not
    tied to a Minecraft version so the project
    version is always "latest".
    """

    project = f"{fm.hosts['geyser']}/projects/geyser/versions/latest"
    build   = bd.build
    if build == LATEST:
        source = f"{project}/builds/latest"
        build  = json_get(http_json(fm, source), "build", source=source)

    build = build_check(build, bd)
    return f"{project}/builds/{build}/downloads/standalone"


def resolve_hytale(fm: Foreman, _: BuildDescriptor) -> str:
    """
    Hytale ships a downloader rather than a server
    JAR; versions are chosen by the downloader.
    """

    return f"{fm.hosts['hytale']}/{HYTALE_DOWNLOADER_ZIP}"


def resolve_mcjars(fm: Foreman, bd: BuildDescriptor) -> str:
    """Any Minecraft flavor through the MCJars builds API."""

    root    = f"{fm.hosts['mcjars']}/v2/builds/{str(bd.flavor).upper()}"
    version = bd.version
    if version == LATEST:
        versions = json_get(http_json(fm, root), "builds", source=root)
        if not isinstance(versions, typing.Mapping):
            raise VersionResolutionFailure(f"{root}: version listing is malformed")
        version = version_pick(list(versions), root)

    source = f"{root}/{version}"
    builds = json_get(http_json(fm, source), "builds", source=source)
    if not isinstance(builds, list):
        raise VersionResolutionFailure(f"{source}: build listing is malformed")

    numbered = [
        b for b in builds
        if REGEX_BUILD_NUMBER.match(str(json_opt(b, "buildNumber")))]
    if bd.build == LATEST:
        picked = max(numbered, key=lambda b: int(b["buildNumber"]), default=None)
    else:
        build  = build_check(bd.build, bd)
        picked = next((b for b in numbered if str(b["buildNumber"]) == build), None)

    if picked is None:
        raise VersionResolutionFailure(
            f"no {bd.flavor} build {bd.build!r} found for version {version}")
    return json_get(picked, "jarUrl", source=source)


def resolve_papermc(fm: Foreman, bd: BuildDescriptor) -> str:
    """PaperMC hosted projects (paper, velocity, folia)."""

    project = f"{fm.hosts['papermc']}/projects/{bd.flavor}"
    version = bd.version
    if version == LATEST:
        versions = json_get(http_json(fm, project), "versions", source=project)
        version  = version_pick(versions, project)

    source = f"{project}/versions/{version}"
    build  = bd.build
    if build == LATEST:
        builds = json_get(http_json(fm, source), "builds", source=source)
        build  = build_pick(builds, source)

    build  = build_check(build, bd)
    source = f"{source}/builds/{build}"
    name   = json_opt(http_json(fm, source), "downloads", "application", "name")

    # The API usually names the artifact; when
    # it does not, the published naming is used.
    if not name or not isinstance(name, str):
        name = f"{bd.flavor}-{version}-{build}.jar"
    return f"{source}/downloads/{name.strip()}"


def resolve_purpur(fm: Foreman, bd: BuildDescriptor) -> str:
    """Purpur, from its own v2 API."""

    project = f"{fm.hosts['purpur']}/purpur"
    version = bd.version
    if version == LATEST:
        versions = json_get(http_json(fm, project), "versions", source=project)
        version  = version_pick(versions, project)

    build = bd.build
    if build == LATEST:
        source = f"{project}/{version}"
        build  = json_get(http_json(fm, source), "builds", "latest", source=source)

    build = build_check(build, bd)
    return f"{project}/{version}/{build}/download"


RESOLVERS: typing.Mapping[Flavor, typing.Callable[[Foreman, BuildDescriptor], str]] = {
    Flavor.Paper:      resolve_papermc,
    Flavor.Velocity:   resolve_papermc,
    Flavor.Folia:      resolve_papermc,
    Flavor.Purpur:     resolve_purpur,
    Flavor.Pufferfish: resolve_mcjars,
    Flavor.Fabric:     resolve_fabric,
    Flavor.Forge:      resolve_forge,
    Flavor.Geyser:     resolve_geyser,
    Flavor.Hytale:     resolve_hytale,
}


# -----------------------------------------------
# Download utilities.
# -----------------------------------------------

def download(fm: Foreman, dd: DownloadDescriptor) -> pathlib.Path:
    """
    Fetch an artifact to its destination,
    retrying transient failures.
    """

    dest = pathlib.Path(dd.dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    click.echo(f"    → Downloading from: {dd.url}")

    for attempt in range(1, fm.retries + 1):
        if download_attempt(dd.url, dest):
            click.echo(f"    ✓ Downloaded {file_size(dest)}")
            return dest

        if attempt < fm.retries:
            click.echo(
                f"    ⚠ Download attempt {attempt} failed, retrying...",
                err=True)
            time.sleep(fm.backoff)

    raise DownloadFailure(
        f"failed to download {dd.url} after {fm.retries} attempts")


def download_attempt(url: str, dest: pathlib.Path) -> bool:
    """
    Single transfer. Success means no transfer
    error and a non-empty file.
    """

    dest.unlink(missing_ok=True)
    # wget stages its temp file in the cwd.
    staged = set(dest.parent.glob(f"{dest.name}*.tmp"))
    try:
        with from_directory(dest.parent):
            wget.download(url, dest.name, bar=None)
    except (OSError, ValueError) as err:
        click.echo(f"    ⚠ {url} <{err}>", err=True)
        dest.unlink(missing_ok=True)
        return False
    finally:
        for tmp in set(dest.parent.glob(f"{dest.name}*.tmp")) - staged:
            tmp.unlink(missing_ok=True)

    if dest.is_file() and dest.stat().st_size > 0:
        return True

    dest.unlink(missing_ok=True)
    return False


def sha256_file(path: pathlib.Path | str) -> str:
    """Hex SHA-256 digest of a file."""

    digest = hashlib.sha256()
    with open(path, "rb") as fd:
        for chunk in iter(lambda: fd.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify(dd: DownloadDescriptor) -> None:
    """
    Compare a downloaded artifact against its
    expected digest. Mismatches are deleted.
    """

    if not dd.checksum:
        return

    expected = dd.checksum.strip().lower()
    actual   = sha256_file(dd.dest)
    if actual != expected:
        pathlib.Path(dd.dest).unlink(missing_ok=True)
        raise ChecksumMismatch(
            f"checksum mismatch for {dd.dest}\n"
            f"      Expected: {dd.checksum}\n"
            f"      Got: {actual}")


# -----------------------------------------------
# Hytale authentication utilities.
# -----------------------------------------------

def auth_bearer(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def auth_cache_parse(text: str) -> AuthCache:
    """
    Parse a cache record. Both the refresh token
    and the profile uuid are required.
    """

    try:
        doc = json.loads(text)
    except ValueError as err:
        raise InvalidOrIncompleteCache("auth cache is not valid JSON") from err

    if not isinstance(doc, dict):
        raise InvalidOrIncompleteCache("auth cache is not a JSON object")

    missing = [k for k in ("refresh_token", "profile_uuid") if not doc.get(k)]
    if missing:
        raise InvalidOrIncompleteCache(
            f"auth cache is missing {', '.join(missing)}")

    timestamp = doc.get("timestamp")
    return AuthCache(
        str(doc["refresh_token"]),
        str(doc["profile_uuid"]),
        timestamp if isinstance(timestamp, int) else 0)


def auth_cache_read(path: pathlib.Path | str) -> AuthCache | None:
    """
    Load the token cache. Untrustworthy files
    are removed and treated as absent.
    """

    path = pathlib.Path(path)
    if not path.is_file():
        return None

    try:
        return auth_cache_parse(path.read_text())
    except InvalidOrIncompleteCache as err:
        click.echo(f"    ⚠ {err.message}; removing {path}", err=True)
        path.unlink(missing_ok=True)
        return None


def auth_cache_write(path: pathlib.Path | str, cache: AuthCache) -> None:
    """Persist the token cache, readable by its owner only."""

    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fp:
        json.dump(cache._asdict(), fp, indent=2)
    # O_CREAT mode does not apply to existing files.
    path.chmod(0o600)


def auth_device_flow(fm: Foreman) -> Tokens:
    """
    OAuth2 device authorization grant. Polls until
    tokens are issued, a hard error is returned or
    `fm.cancel` is set.
    """

    url = fm.auth.device_url
    try:
        res = fm.client.post(
            url, data={"client_id": fm.auth.client_id, "scope": fm.auth.scope})
        doc = res.json()
    except httpx.HTTPError as err:
        raise AuthorizationError(f"device authorization failed <{err}>") from err
    except ValueError as err:
        raise AuthorizationError(
            f"device authorization returned invalid JSON: {res.text!r}") from err

    device_code = json_opt(doc, "device_code")
    verify_uri  = (
        json_opt(doc, "verification_uri_complete")
        or json_opt(doc, "verification_uri"))
    if not (device_code and verify_uri):
        raise AuthorizationError(
            f"device authorization response is incomplete: {res.text!r}")

    interval = json_opt(doc, "interval")
    interval = interval if isinstance(interval, (int, float)) else 5

    click.echo(f"    → Visit {verify_uri} to authorize this server")
    if json_opt(doc, "user_code"):
        click.echo(f"    → Code: {doc['user_code']}")

    while True:
        if fm.cancel.wait(interval):
            raise AuthorizationCancelled("device authorization cancelled")

        doc = auth_token_request(fm, {
            "grant_type":  GRANT_DEVICE_CODE,
            "device_code": device_code,
            "client_id":   fm.auth.client_id})

        error = doc.get("error")
        if error == "authorization_pending":
            continue
        if error:
            description = doc.get("error_description") or ""
            raise AuthorizationError(
                f"device authorization failed: {error} {description}".strip())

        access, refresh = doc.get("access_token"), doc.get("refresh_token")
        if not (access and refresh):
            raise AuthorizationError(
                f"token response is missing tokens: {json.dumps(doc)}")
        click.echo("    ✓ Authorized")
        return Tokens(access, refresh)


def auth_profile_select(
    profiles: typing.Sequence[Profile],
    name: str | None = None) -> Profile:
    """Pick the requested profile, or the first one."""

    if not profiles:
        raise EmptyProfileSet(
            "no game profiles found for this account; "
            "a purchased game is required to run a server")
    if not name:
        return profiles[0]

    for profile in profiles:
        if profile.username == name:
            return profile

    available = ", ".join(p.username or p.uuid for p in profiles)
    raise ProfileNotFound(f"profile {name!r} not found. Available: {available}")


def auth_profiles(fm: Foreman, access_token: str) -> tuple[Profile, ...]:
    """Game profiles owned by the account."""

    url = fm.auth.profiles_url
    try:
        res = fm.client.get(url, headers=auth_bearer(access_token))
        res.raise_for_status()
        doc = res.json()
    except httpx.HTTPError as err:
        raise AuthorizationError(f"failed to fetch profiles <{err}>") from err
    except ValueError as err:
        raise AuthorizationError(
            f"profile listing is not valid JSON: {res.text!r}") from err

    profiles = json_opt(doc, "profiles")
    if not isinstance(profiles, list):
        raise AuthorizationError(f"profile listing is malformed: {res.text!r}")

    return tuple(
        Profile(str(p["uuid"]), str(p.get("username") or ""))
        for p in profiles
        if isinstance(p, typing.Mapping) and p.get("uuid"))


def auth_refresh(fm: Foreman, refresh_token: str) -> Tokens | None:
    """
    Exchange a cached refresh token. Returns None
    when the token is rejected; transport and
    server failures are fatal.
    """

    doc = auth_token_request(fm, {
        "grant_type":    GRANT_REFRESH,
        "refresh_token": refresh_token,
        "client_id":     fm.auth.client_id})

    if doc.get("error") or not doc.get("access_token"):
        click.echo(
            f"    ⚠ Refresh rejected: {doc.get('error') or 'no access token'}",
            err=True)
        return None

    # Providers that do not rotate omit the token.
    return Tokens(doc["access_token"], doc.get("refresh_token") or refresh_token)


def auth_login(
    fm: Foreman,
    cache_path: pathlib.Path | str,
    profile_name: str | None = None) -> tuple[str, str]:
    """
    Obtain an access token and profile uuid,
    silently refreshing a cached credential when
    possible and falling back to interactive
    device authorization. The cache is only
    discarded when the provider rejects it.

    The cache file is not locked; one writer per
    installation is assumed.
    """

    cache_path = pathlib.Path(cache_path)
    cache      = auth_cache_read(cache_path)

    if cache:
        click.echo("    → Refreshing cached credentials")
        tokens = auth_refresh(fm, cache.refresh_token)
        if tokens:
            auth_cache_write(cache_path, cache._replace(
                refresh_token=tokens.refresh_token,
                timestamp=int(time.time())))
            return tokens.access_token, cache.profile_uuid

        click.echo("    ⚠ Cached credentials rejected; re-authenticating", err=True)
        cache_path.unlink(missing_ok=True)

    tokens  = auth_device_flow(fm)
    profile = auth_profile_select(
        auth_profiles(fm, tokens.access_token),
        profile_name or fm.auth.profile_name)
    click.echo(f"    ✓ Using profile {profile.username or profile.uuid}")

    auth_cache_write(
        cache_path,
        AuthCache(tokens.refresh_token, profile.uuid, int(time.time())))
    return tokens.access_token, profile.uuid


def auth_session(
    fm: Foreman,
    cache_path: pathlib.Path | str,
    profile_name: str | None = None) -> Session:
    """Log in and request a game session."""

    access_token, profile_uuid = auth_login(fm, cache_path, profile_name)
    return auth_session_new(fm, access_token, profile_uuid)


def auth_session_new(fm: Foreman, access_token: str, profile_uuid: str) -> Session:
    """Request a short-lived game session for a profile."""

    url = fm.auth.session_url
    try:
        res = fm.client.post(
            url, json={"uuid": profile_uuid}, headers=auth_bearer(access_token))
    except httpx.HTTPError as err:
        raise AuthorizationError(f"session request failed <{err}>") from err

    try:
        doc = res.json()
    except ValueError as err:
        raise MalformedSessionResponse(
            f"session response is not valid JSON: {res.text!r}") from err

    if not (json_opt(doc, "sessionToken") and json_opt(doc, "identityToken")):
        raise MalformedSessionResponse(
            f"session response has no session token: {res.text!r}")
    return Session(doc["sessionToken"], doc["identityToken"])


def auth_token_request(fm: Foreman, data: typing.Mapping[str, str]) -> dict:
    """
    POST to the token endpoint. Error bodies are
    returned for the caller to inspect.
    """

    url = fm.auth.token_url
    try:
        res = fm.client.post(url, data=dict(data))
    except httpx.HTTPError as err:
        raise AuthorizationError(f"token request failed <{err}>") from err
    if res.is_server_error:
        raise AuthorizationError(
            f"token endpoint returned {res.status_code}: {res.text!r}")

    try:
        doc = res.json()
    except ValueError as err:
        raise AuthorizationError(
            f"token endpoint returned invalid JSON: {res.text!r}") from err
    if not isinstance(doc, dict):
        raise AuthorizationError(f"token endpoint returned {res.text!r}")
    return doc


# -----------------------------------------------
# Systemd unit utilities.
# -----------------------------------------------

def unit_config_new(
    inst: Installation,
    exec_start: str,
    *,
    description: str,
    documentation: str,
    working_dir: pathlib.Path | None = None) -> UnitConfig:
    """Create new `UnitConfig` for an installation."""

    return UnitConfig(
        description,
        documentation,
        inst.service_name,
        inst.user,
        inst.group,
        working_dir or inst.install_dir,
        exec_start,
        inst.runtime_socket,
        **UNIT_PROFILES[inst.product])


def unit_render(sections: UnitSections) -> str:
    """Render ordered unit sections to text."""

    lines = []
    for name, entries in sections:
        if lines:
            lines.append("")
        lines.append(f"[{name}]")
        for key, value in entries:
            value = str(value)
            if "\n" in value or "\r" in value:
                raise ValueError(f"{name}.{key} must be a single line: {value!r}")
            lines.append(f"{key}={value}")

    return "\n".join(lines) + "\n"


def unit_service_text(cfg: UnitConfig) -> str:
    """Service unit text."""

    return unit_render((
        ("Unit", (
            ("Description", cfg.description),
            ("Documentation", cfg.documentation),
            ("After", "network-online.target"),
            ("Wants", "network-online.target"))),
        ("Service", (
            ("Type", "simple"),
            ("User", cfg.user),
            ("Group", cfg.group),
            ("Sockets", f"{cfg.service_name}.socket"),
            ("StandardInput", "socket"),
            ("StandardOutput", "journal"),
            ("StandardError", "journal"),
            ("SyslogIdentifier", cfg.service_name),
            ("NoNewPrivileges", "true"),
            ("ProtectHome", "yes"),
            ("MemoryMax", cfg.memory_max),
            ("CPUQuota", cfg.cpu_quota),
            ("TasksMax", cfg.tasks_max),
            ("LimitNOFILE", 65536),
            ("WorkingDirectory", cfg.working_dir),
            ("ExecStart", cfg.exec_start),
            ("KillMode", "process"),
            ("KillSignal", "SIGTERM"),
            ("TimeoutStopSec", cfg.timeout_stop),
            ("Restart", "on-failure"),
            ("RestartSec", cfg.restart_sec))),
        ("Install", (
            ("WantedBy", "multi-user.target"),)),
    ))


def unit_socket_text(cfg: UnitConfig) -> str:
    """Console socket unit text."""

    return unit_render((
        ("Unit", (
            ("Description", f"{cfg.description} Console Socket"),
            ("Documentation", cfg.documentation),
            ("BindsTo", f"{cfg.service_name}.service"))),
        ("Socket", (
            (cfg.listen, cfg.runtime_socket),
            ("Service", f"{cfg.service_name}.service"),
            ("RemoveOnStop", "true"),
            ("SocketMode", "0660"),
            ("SocketUser", cfg.user),
            ("SocketGroup", cfg.group))),
        ("Install", (
            ("WantedBy", "sockets.target"),)),
    ))


def systemd_enable(inst: Installation) -> None:
    """Reload systemd and activate the console socket."""

    run("systemctl", "daemon-reload")
    run_ok("systemctl", "enable", f"{inst.service_name}.service")
    run_ok("systemctl", "enable", f"{inst.service_name}.socket")
    # The socket must exist before the service can read from it.
    run_ok("systemctl", "start", f"{inst.service_name}.socket")
    click.echo("    ✓ Systemd configured")


def systemd_known(unit: str) -> bool:
    """Whether systemd knows about a unit."""

    try:
        res = subprocess.run(
            ["systemctl", "list-units", "--full", "--all"],
            capture_output=True,
            text=True)
    except OSError:
        return False
    return unit in res.stdout


def systemd_remove(inst: Installation) -> None:
    """
    Stop and remove the unit pair and anything
    left running for the service account.
    """

    for step, unit in (("1", f"{inst.service_name}.service"), ("1.5", f"{inst.service_name}.socket")):
        if systemd_known(unit):
            click.echo(f"[{step}] Stopping {unit}")
            run_ok("systemctl", "stop", unit)
            run_ok("systemctl", "disable", unit)
        else:
            click.echo(f"[{step}] {unit} not found")

    if run_ok("id", inst.user):
        click.echo(f"[1b] Killing remaining processes for user {inst.user}")
        run_ok("pkill", "-9", "-u", inst.user)
        time.sleep(1)

    for step, path in (("2", inst.service_unit), ("2.5", inst.socket_unit)):
        if path.is_file():
            click.echo(f"[{step}] Removing systemd unit {path}")
            path.unlink()
        else:
            click.echo(f"[{step}] {path.name} not present")

    run_ok("systemctl", "daemon-reload")

    # A FIFO is not a socket; check for either.
    if inst.runtime_socket.exists() or inst.runtime_socket.is_symlink():
        click.echo(f"[2.7] Removing runtime socket {inst.runtime_socket}")
        inst.runtime_socket.unlink()
    else:
        click.echo("[2.7] Runtime socket already removed")


def systemd_write(inst: Installation, cfg: UnitConfig) -> None:
    """Write the service and socket units."""

    inst.unit_root.mkdir(parents=True, exist_ok=True)
    inst.service_unit.write_text(unit_service_text(cfg))
    inst.socket_unit.write_text(unit_socket_text(cfg))
    click.echo(f"    ✓ Created {inst.service_unit}")
    click.echo(f"    ✓ Created {inst.socket_unit}")


# -----------------------------------------------
# Server configuration utilities.
# -----------------------------------------------

def props_write(
    path: pathlib.Path,
    props: typing.Mapping[str, typing.Any],
    comment: str | None = None) -> pathlib.Path:
    """Write a Java properties file."""

    config = jproperties.Properties()
    for key, value in props.items():
        if isinstance(value, bool):
            value = str(value).lower()
        config[key] = str(value)

    with open(path, "wb") as fd:
        config.store(
            fd, initial_comments=comment, encoding="utf-8", timestamp=False)
    return path


def props_read(path: pathlib.Path) -> dict[str, str]:
    """Read a Java properties file."""

    config = jproperties.Properties()
    with open(path, "rb") as fd:
        config.load(fd, "utf-8")
    return {k: v.data for k, v in config.items()}


def eula_write(inst: Installation) -> pathlib.Path:
    """Accept the Minecraft EULA."""

    path = props_write(inst.install_dir / "eula.txt", {"eula": True}, EULA_COMMENT)
    return system_file(inst, path)


def server_properties_write(
    inst: Installation,
    opts: ServerOptions) -> pathlib.Path | None:
    """
    Seed server.properties. An existing file is
    left alone.
    """

    path = inst.install_dir / "server.properties"
    if path.exists():
        click.echo(f"    ✓ Kept existing {path.name}")
        return None

    props = {
        "server-port": opts.port,
        "server-ip":   "0.0.0.0",
        "level-name":  opts.world_name,
        "max-players": opts.max_players,
        "online-mode": True,
        "pvp":         True,
        "difficulty":  1,
        "gamemode":    0,
        "motd":        opts.motd,
    }
    props_write(path, props, "Minecraft Server Properties")
    return system_file(inst, path)


def hytale_config_write(
    inst: Installation,
    server_name: str,
    motd: str,
    max_players: int) -> pathlib.Path | None:
    """
    Seed Hytale's config.json. An existing file
    is left alone.
    """

    path = inst.install_dir / "AppFiles" / "Server" / "config.json"
    if path.exists():
        click.echo(f"    ✓ Kept existing {path.name}")
        return None

    config = {
        "ServerName":    server_name,
        "MOTD":          motd,
        "Password":      "",
        "MaxPlayers":    max_players,
        "MaxViewRadius": 32,
        "Defaults": {
            "World":    "default",
            "GameMode": "Adventure",
        },
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    return system_file(inst, path, json.dumps(config, indent=2) + "\n")


# -----------------------------------------------
# Minecraft specific utilities.
# -----------------------------------------------

def minecraft_exec_start(
    flavor: Flavor,
    java_bin: str,
    jar: pathlib.Path,
    opts: ServerOptions,
    forge_launch: str | None = None) -> str:
    """Startup command line for a Minecraft flavor."""

    mem = opts.java_flags or f"-Xmx{opts.heap_mb}M -Xms{opts.heap_mb}M"
    if flavor is Flavor.Forge:
        return f"{java_bin} {mem} -XX:+UseG1GC {forge_launch} nogui"
    if flavor in FlavorProxy:
        return f"{java_bin} {mem} -jar {jar.name}"
    return f"{java_bin} {mem} -XX:+UseG1GC -XX:MaxGCPauseMillis=200 -jar {jar.name} nogui"


def minecraft_forge_install(
    inst: Installation,
    installer: pathlib.Path,
    java_bin: str) -> str:
    """
    Run the Forge installer and return how the
    server should be launched.
    """

    click.echo("[5] Running Forge installer")
    with from_directory(inst.install_dir):
        run(java_bin, "-jar", installer.name, "--installServer")

    # Modern Forge ships an argument file.
    args = sorted(inst.install_dir.glob(
        "libraries/net/minecraftforge/forge/*/unix_args.txt"))
    if args:
        launch = "@" + str(args[-1].relative_to(inst.install_dir))
        click.echo(f"    ✓ Forge installed: {launch}")
        return launch

    jars = [
        p for p in sorted(inst.install_dir.glob("forge-*.jar"))
        if "installer" not in p.name]
    if not jars:
        raise ProvisionError("Forge server JAR not found after installation")

    link = inst.install_dir / "server.jar"
    link.unlink(missing_ok=True)
    link.symlink_to(jars[0].name)
    click.echo(f"    ✓ Forge installed: {jars[0].name}")
    return f"-jar {link.name}"


def minecraft_install(
    fm: Foreman,
    inst: Installation,
    bd: BuildDescriptor,
    opts: ServerOptions) -> None:
    """Provision a Minecraft server instance."""

    click.echo("[*] Multi-Variant Minecraft Server Installer")
    click.echo(f"    Installer Type: {bd.flavor}")
    click.echo(f"    Minecraft Version: {bd.version}")
    click.echo()

    system_account(inst)
    system_dirs(inst, MINECRAFT_DIRS)

    click.echo(f"[3] Downloading {bd.flavor} server JAR")
    if opts.url:
        url = url_validate(opts.url, strict=False)
    else:
        url = resolve(fm, bd, opts.api).url

    jar = inst.install_dir / FLAVOR_JARS.get(bd.flavor, f"{bd.flavor}-server.jar")
    dd  = DownloadDescriptor(url, opts.checksum, jar)
    download(fm, dd)

    if dd.checksum:
        click.echo("[4] Verifying JAR checksum")
        verify(dd)
        click.echo("    ✓ Checksum verified")

    required = JAVA_REQUIRED[bd.flavor]
    launch   = None
    click.echo("[5] Checking Java runtime")
    java_ensure(fm, required)
    java_bin = java_resolve(required)
    click.echo(f"    ✓ Using: {java_bin} (Java {java_version(java_bin)})")
    if bd.flavor is Flavor.Forge:
        launch = minecraft_forge_install(inst, jar, java_bin)

    click.echo("[6] Creating systemd service unit")
    cfg = unit_config_new(
        inst,
        minecraft_exec_start(bd.flavor, java_bin, jar, opts, launch),
        description=f"Minecraft Server ({bd.flavor})",
        documentation="https://minecraft.wiki/w/Server")
    systemd_write(inst, cfg)

    if opts.eula:
        click.echo("[7] Accepting Minecraft EULA")
        eula_write(inst)
        click.echo("    ✓ EULA accepted")

    click.echo("[8] Creating configuration files")
    if bd.flavor not in FlavorProxy:
        server_properties_write(inst, opts)
    click.echo("    ✓ Configuration files created")

    system_chown(inst, inst.install_dir, recursive=True)
    jar.chmod(0o640)
    click.echo("    ✓ Set permissions")

    click.echo("[10] Finalizing systemd configuration")
    systemd_enable(inst)

    click.echo(textwrap.dedent(f"""
    ✅ Installation Complete!

    📋 Details:
       Installer Type: {bd.flavor}
       Minecraft Version: {bd.version}
       Installation Directory: {inst.install_dir}

    📋 Next Steps:
       1. Start: sudo systemctl start {inst.service_name}
       2. Check logs: sudo journalctl -u {inst.service_name} -f
       3. Send commands: foreman console {inst.instance_id} help
    """))


# -----------------------------------------------
# Hytale specific utilities.
# -----------------------------------------------

def hytale_downloader_fetch(
    fm: Foreman,
    inst: Installation,
    patchline: str = "release") -> pathlib.Path:
    """
    Fetch the Hytale downloader and use it to
    pull the game files into AppFiles.
    """

    app = inst.install_dir / "AppFiles"
    dd  = resolve(fm, build_new(Flavor.Hytale))._replace(
        dest=app / HYTALE_DOWNLOADER_ZIP)
    download(fm, dd)

    exe = app / HYTALE_DOWNLOADER_EXE
    with zipfile.ZipFile(dd.dest) as zf:
        zf.extractall(app)
        if not exe.is_file():
            name = next((n for n in zf.namelist() if "linux" in n and "amd64" in n), None)
            if not name:
                raise ProvisionError(f"{HYTALE_DOWNLOADER_EXE} not found in {dd.dest}")
            shutil.move(app / name, exe)
    exe.chmod(0o755)
    system_chown(inst, app, recursive=True)
    click.echo("    ✓ Downloaded Hytale downloader")

    click.echo("[5] Downloading Hytale server files")
    click.echo("    ⚠ You may be prompted to authenticate in your web browser")
    game = app / HYTALE_GAME_ZIP
    run(
        "runuser", "-u", inst.user, "--",
        str(exe),
        "-download-path", str(game),
        "-patchline", patchline,
        "-skip-update-check",
        cwd=app)

    if game.is_file():
        with zipfile.ZipFile(game) as zf:
            zf.extractall(app)
        game.unlink()
    system_chown(inst, app, recursive=True)

    jar = app / "Server" / "HytaleServer.jar"
    if not jar.is_file():
        raise ProvisionError(
            f"Hytale server JAR not found. Expected: {jar}. "
            "Ensure you completed authentication for the downloader")
    click.echo("    ✓ Downloaded Hytale server files")
    return jar


def hytale_java_args(
    java_bin: str,
    heap_mb: int,
    inst: Installation,
    session: Session | None = None) -> list[str]:
    """Java command line for the Hytale server."""

    app  = inst.install_dir / "AppFiles"
    args = [
        java_bin,
        "-server",
        f"-Xms{heap_mb}M",
        f"-Xmx{heap_mb}M",
        *(f"-XX:{x}" for x in HYTALE_JAVA_XX),
        "-jar", str(app / "Server" / "HytaleServer.jar"),
        "--assets", str(app / "Assets.zip"),
        "--accept-early-plugins"]

    if session:
        args += [
            "--session-token", session.session_token,
            "--identity-token", session.identity_token]
    return args


def hytale_exec_start(
    inst: Installation,
    java_bin: str,
    heap_mb: int,
    launcher: str) -> str:
    """
    Startup command line. The launcher obtains a
    game session and then execs the server.
    """

    return shlex.join((
        launcher, "hytale", "launch",
        "--instance-id", inst.instance_id,
        "--install-dir", str(inst.install_dir),
        "--java-bin", java_bin,
        "--heap-mb", str(heap_mb)))


def hytale_install(
    fm: Foreman,
    inst: Installation,
    *,
    heap_mb: int,
    server_name: str,
    motd: str,
    max_players: int,
    patchline: str,
    launcher: str,
    authenticate: bool | None = True,
    profile_name: str | None = None) -> None:
    """Provision a Hytale server instance."""

    click.echo("[*] Hytale Server Installer")
    click.echo()

    system_account(inst)
    system_dirs(inst, HYTALE_DIRS)

    click.echo("[3] Checking Java runtime")
    java_ensure(fm, JAVA_REQUIRED[Flavor.Hytale], exact=True)
    java_bin = java_resolve(JAVA_REQUIRED[Flavor.Hytale], exact=True)
    click.echo(f"    ✓ Using: {java_bin}")

    click.echo("[4] Downloading Hytale downloader")
    hytale_downloader_fetch(fm, inst, patchline)

    if authenticate:
        click.echo("[5b] Authenticating server account")
        cache = inst.install_dir / HYTALE_AUTH_CACHE
        auth_login(fm, cache, profile_name)
        system_file(inst, cache, mode=0o600)

    click.echo("[6] Creating systemd service unit")
    cfg = unit_config_new(
        inst,
        hytale_exec_start(inst, java_bin, heap_mb, launcher),
        description="Hytale Dedicated Server",
        documentation="https://hytale.com",
        working_dir=inst.install_dir / "AppFiles")
    systemd_write(inst, cfg)

    click.echo("[7] Creating server configuration template")
    hytale_config_write(inst, server_name, motd, max_players)

    click.echo("[8] Finalizing systemd configuration")
    systemd_enable(inst)

    click.echo(textwrap.dedent(f"""
    ✅ Installation Complete!

    📋 Next Steps:
       1. Edit {inst.install_dir}/AppFiles/Server/config.json with your settings
       2. Start: sudo systemctl start {inst.service_name}
       3. Check logs: sudo journalctl -u {inst.service_name} -f
       4. Send commands: foreman console -P hytale {inst.instance_id} help

    ⚠️ Important: Hytale requires Java 25 specifically!
    """))


def hytale_launch(
    fm: Foreman,
    inst: Installation,
    java_bin: str,
    heap_mb: int,
    profile_name: str | None = None) -> typing.NoReturn:
    """Authenticate and replace this process with the server."""

    session = auth_session(fm, inst.install_dir / HYTALE_AUTH_CACHE, profile_name)
    args    = hytale_java_args(java_bin, heap_mb, inst, session)

    os.chdir(inst.install_dir / "AppFiles")
    os.execv(args[0], args)


# -----------------------------------------------
# Common service utilities.
# -----------------------------------------------

def console_send(inst: Installation, command: str) -> None:
    """Write a console command into the runtime FIFO."""

    path = inst.runtime_socket
    if not path.exists():
        raise ForemanError(
            f"console socket {path} not found; "
            f"is {inst.service_name}.socket running?")

    with open(path, "w") as fp:
        fp.write(command.rstrip("\n") + "\n")


def foreman_new(
    cfg: typing.Mapping | None = None,
    *,
    client: httpx.Client | None = None,
    cancel: threading.Event | None = None) -> Foreman:
    """Create new `Foreman` context."""

    cfg   = cfg or {}
    hosts = {**HOSTS_DEFAULT, **cfg_opt(cfg, "foreman.hosts", {})}
    auth  = {**AUTH_DEFAULT, **cfg_opt(cfg, "foreman.auth", {})}

    client = client or httpx.Client(
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
        timeout=cfg_opt(cfg, "foreman.http.timeout", 30.0))

    return Foreman(
        client,
        {k: str(v).rstrip("/") for k, v in hosts.items()},
        AuthSettings(**{k: str(auth[k]) for k in AuthSettings._fields}),
        cancel or threading.Event(),
        int(cfg_opt(cfg, "foreman.download.retries", 3)),
        float(cfg_opt(cfg, "foreman.download.backoff", 2.0)))


@contextlib.contextmanager
def foreman_open(cfg: typing.Mapping | None = None) -> typing.Generator[Foreman, None, None]:
    """Open a `Foreman` context for one invocation."""

    fm = foreman_new(cfg)
    try:
        yield fm
    finally:
        fm.client.close()


def uninstall(inst: Installation, keep_files: bool | None = None) -> None:
    """
    Remove an instance. Data, user and group are
    kept when `keep_files` is set.
    """

    systemd_remove(inst)

    if keep_files:
        click.echo("[3] Keeping files and user/group as requested")
        click.echo(f"    Data directory preserved at {inst.install_dir}")
        return

    if inst.install_dir.is_dir():
        click.echo(f"[3] Removing data directory {inst.install_dir}")
        shutil.rmtree(inst.install_dir)
    else:
        click.echo(f"[3] Data directory already removed ({inst.install_dir})")

    if run_ok("id", inst.user):
        click.echo(f"[4] Removing user {inst.user}")
        if not run_ok("userdel", "-r", inst.user):
            run_ok("userdel", inst.user)
    else:
        click.echo(f"[4] User {inst.user} not present")

    if run_ok("getent", "group", inst.group):
        click.echo(f"[5] Removing group {inst.group}")
        run_ok("groupdel", inst.group)
    else:
        click.echo(f"[5] Group {inst.group} not present")

    click.echo("✅ Uninstall complete")


# -----------------------------------------------
# Foreman Command Line Interface.
# -----------------------------------------------

def opts_apply(
    fn: typing.Callable,
    opts: typing.Sequence[typing.Callable]) -> typing.Callable:
    """Wrap function with CLI options."""

    for o in opts:
        fn = o(fn)
    return fn


def opts_instance(fn: typing.Callable) -> typing.Callable:
    """Wrap function with common instance options."""

    opts = (
        click.option("-i", "--instance-id", envvar="INSTANCE_ID", default="default"),
        click.option("-d", "--install-dir", envvar="INSTALL_DIR"),
        click.option("--user", envvar="GAME_USER"),
        click.option("--group", envvar="GAME_GROUP"))
    return opts_apply(fn, opts)


def opts_java(fn: typing.Callable) -> typing.Callable:
    """Wrap function with common Java options."""

    opts = (
        click.option("-m", "--heap-mb", envvar="HEAP_MB", type=int),
        click.option("--java-flags", envvar="JAVA_FLAGS"))
    return opts_apply(fn, opts)


def inst_new(
    cfg: typing.Mapping,
    product: Product,
    instance_id: str,
    install_dir: str | None = None,
    user: str | None = None,
    group: str | None = None) -> Installation:
    """`Installation` from CLI values and config."""

    return installation_new(
        instance_id,
        product,
        install_dir,
        user=user,
        group=group,
        unit_root=cfg_opt(cfg, "foreman.paths.units", None),
        run_root=cfg_opt(cfg, "foreman.paths.run", None))


@click.group()
@click.option(
    "-c", "--config",
    envvar="FOREMAN_CONFIG",
    type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def main_cli(ctx: click.Context, config: str | None = None):
    """Provision game server services."""

    ctx.obj = cfg_load(config)


@main_cli.command("resolve")
@click.argument("flavor")
@click.option("-V", "--version", default=LATEST)
@click.option("-B", "--build", default=LATEST)
@click.option("--api", type=click.Choice(["native", "mcjars"]), default="native")
@click.pass_obj
def resolve_cmd(
    cfg: typing.Mapping,
    flavor: str,
    version: str,
    build: str,
    api: str):
    """Print the download URL for a flavor."""

    bd = build_new(flavor, version, build)
    with foreman_open(cfg) as fm:
        click.echo(resolve(fm, bd, api).url)


@main_cli.command()
@click.argument("instance_id")
@click.argument("cmd", nargs=-1, required=True)
@click.option(
    "-P", "--product",
    type=click.Choice([str(p) for p in Product]),
    default=str(Product.Minecraft))
@click.pass_obj
def console(
    cfg: typing.Mapping,
    instance_id: str,
    cmd: tuple[str, ...],
    product: str):
    """Send a command to a server console."""

    inst = inst_new(cfg, Product(product), instance_id)
    console_send(inst, " ".join(cmd))
    click.echo(f"sent to {inst.service_name}")


@main_cli.group()
def minecraft():
    """Manage Minecraft servers."""


@minecraft.command("install")
@opts_instance
@opts_java
@click.option("-t", "--flavor", envvar=["INSTALLER_TYPE", "GAME_FLAVOR"], default="paper")
@click.option("-V", "--mc-version", envvar=["MINECRAFT_VERSION", "MC_VERSION"], default="1.21.1")
@click.option("-B", "--build", envvar=["BUILD_NUMBER", "BUILD"], default=LATEST)
@click.option("--url", envvar="INSTALLER_URL")
@click.option("--checksum", envvar="JAR_CHECKSUM")
@click.option("--api", envvar="MINECRAFT_API", type=click.Choice(["native", "mcjars"]), default="native")
@click.option("-p", "--port", envvar="PORT", type=int, default=25565)
@click.option("--world-name", envvar="WORLD_NAME", default="world")
@click.option("--max-players", envvar="MAX_PLAYERS", type=int, default=20)
@click.option("--motd", envvar="SERVER_MOTD", default="A Minecraft Server")
@click.option("--eula/--no-eula", envvar="EULA", default=True)
@click.pass_obj
def minecraft_install_cmd(
    cfg: typing.Mapping,
    instance_id: str,
    install_dir: str | None,
    user: str | None,
    group: str | None,
    heap_mb: int | None,
    java_flags: str | None,
    flavor: str,
    mc_version: str,
    build: str,
    **kwds):
    """Install a Minecraft server."""

    bd = build_new(flavor, mc_version, build)
    if bd.flavor is Flavor.Hytale:
        raise UnsupportedFlavor("hytale is installed with `foreman hytale install`")

    inst = inst_new(cfg, Product.Minecraft, instance_id, install_dir, user, group)
    opts = ServerOptions(heap_mb=heap_mb or 2048, java_flags=java_flags, **kwds)
    with foreman_open(cfg) as fm:
        minecraft_install(fm, inst, bd, opts)


@minecraft.command("uninstall")
@opts_instance
@click.option("--keep-files", envvar="KEEP_FILES", is_flag=True)
@click.pass_obj
def minecraft_uninstall_cmd(
    cfg: typing.Mapping,
    instance_id: str,
    install_dir: str | None,
    user: str | None,
    group: str | None,
    keep_files: bool):
    """Remove a Minecraft server."""

    inst = inst_new(cfg, Product.Minecraft, instance_id, install_dir, user, group)
    uninstall(inst, keep_files)


@main_cli.group()
def hytale():
    """Manage Hytale servers."""


@hytale.command("install")
@opts_instance
@click.option("-m", "--heap-mb", envvar="HEAP_MB", type=int, default=4096)
@click.option("--server-name", envvar="SERVER_NAME", default="Hytale Server")
@click.option("--motd", envvar="SERVER_MOTD", default="")
@click.option("--max-players", envvar="MAX_PLAYERS", type=int, default=100)
@click.option("--patchline", envvar="HYTALE_PATCHLINE", default="release")
@click.option("--profile", envvar="HYTALE_PROFILE")
@click.option("--launcher", envvar="FOREMAN_LAUNCHER")
@click.option("--auth/--skip-auth", default=True)
@click.pass_obj
def hytale_install_cmd(
    cfg: typing.Mapping,
    instance_id: str,
    install_dir: str | None,
    user: str | None,
    group: str | None,
    heap_mb: int,
    server_name: str,
    motd: str,
    max_players: int,
    patchline: str,
    profile: str | None,
    launcher: str | None,
    auth: bool):
    """Install a Hytale server."""

    inst     = inst_new(cfg, Product.Hytale, instance_id, install_dir, user, group)
    launcher = launcher or str(next(which("foreman"), "/usr/local/bin/foreman"))
    with foreman_open(cfg) as fm:
        hytale_install(
            fm,
            inst,
            heap_mb=heap_mb,
            server_name=server_name,
            motd=motd,
            max_players=max_players,
            patchline=patchline,
            launcher=launcher,
            authenticate=auth,
            profile_name=profile)


@hytale.command("auth")
@opts_instance
@click.option("--profile", envvar="HYTALE_PROFILE")
@click.pass_obj
def hytale_auth_cmd(
    cfg: typing.Mapping,
    instance_id: str,
    install_dir: str | None,
    user: str | None,
    group: str | None,
    profile: str | None):
    """Authenticate a Hytale server account."""

    inst  = inst_new(cfg, Product.Hytale, instance_id, install_dir, user, group)
    cache = inst.install_dir / HYTALE_AUTH_CACHE
    with foreman_open(cfg) as fm:
        auth_login(fm, cache, profile)
    click.echo(f"    ✓ Credentials cached in {cache}")


@hytale.command("launch")
@opts_instance
@click.option("--java-bin", required=True)
@click.option("-m", "--heap-mb", envvar="HEAP_MB", type=int, default=4096)
@click.option("--profile", envvar="HYTALE_PROFILE")
@click.pass_obj
def hytale_launch_cmd(
    cfg: typing.Mapping,
    instance_id: str,
    install_dir: str | None,
    user: str | None,
    group: str | None,
    java_bin: str,
    heap_mb: int,
    profile: str | None):
    """Start a Hytale server with a fresh session."""

    inst = inst_new(cfg, Product.Hytale, instance_id, install_dir, user, group)
    with foreman_open(cfg) as fm:
        hytale_launch(fm, inst, java_bin, heap_mb, profile)


@hytale.command("uninstall")
@opts_instance
@click.option("--keep-files", envvar="KEEP_FILES", is_flag=True)
@click.pass_obj
def hytale_uninstall_cmd(
    cfg: typing.Mapping,
    instance_id: str,
    install_dir: str | None,
    user: str | None,
    group: str | None,
    keep_files: bool):
    """Remove a Hytale server."""

    inst = inst_new(cfg, Product.Hytale, instance_id, install_dir, user, group)
    uninstall(inst, keep_files)


if __name__ == "__main__":
    exit(main_cli())
