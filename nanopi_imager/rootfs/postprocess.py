"""Post-install configuration of the mounted target root.

Everything here operates on paths under the live mountpoint; commands that
must see the target's own user database (useradd, chpasswd, passwd, chown)
run through ``chroot``.

Identity reset:
    The image is meant to be cloned, so per-machine identity is removed:
    SSH host keys are deleted (regenerated by the first-boot script with the
    SSH service disabled until then) and ``/etc/machine-id`` is deleted so
    each clone gets its own.
"""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path
from typing import Optional

from nanopi_imager.config.settings import RunConfig
from nanopi_imager.domain.models import Account, MediaTarget
from nanopi_imager.logging import LoggerFactory
from nanopi_imager.rootfs import templates
from nanopi_imager.rootfs.boot_files import FILES_DIR, SCRIPT_MODE, bundled_file, install_file
from nanopi_imager.storage.commands import chroot_command, run_checked_command, run_command
from nanopi_imager.storage.exceptions import AccountError, CommandError, MissingFileError


log = LoggerFactory.for_rootfs()

SUDOERS_MODE = 0o400
SSH_DIR_MODE = 0o700
AUTHORIZED_KEYS_MODE = 0o600

WPA_SERVICE_LINK = Path("etc/systemd/system/multi-user.target.wants/wpa_supplicant.service")
DHCPCD_WPA_HOOK = Path("usr/share/dhcpcd/hooks/10-wpa_supplicant")
DHCPCD_HOOKS_DIR = Path("usr/lib/dhcpcd/dhcpcd-hooks")

SSH_SERVICE_FILES = (
    Path("etc/systemd/system/sshd.service"),
    Path("etc/systemd/system/multi-user.target.wants/ssh.service"),
)

# (dotfile, line patterns to uncomment)
ALIAS_LINES = (
    (Path("etc/skel/.bashrc"), (r"alias.ll=",)),
    (Path("root/.bashrc"), (r"export.LS_OPTIONS", r"eval.*dircolors", r"alias.l.=")),
)

_COMMENT_PREFIX = re.compile(r"^#*\s*")


def write_fstab(mountpoint: Path) -> str:
    """Write an fstab keyed on the UUID the formatter gave the mounted device."""
    source = run_checked_command(["findmnt", "-no", "source", str(mountpoint)]).strip()
    uuid = run_checked_command(["blkid", "-o", "value", "-s", "UUID", source]).strip()
    if not uuid:
        raise CommandError(["blkid", source], 0, f"no filesystem UUID for {source}")
    fstab = mountpoint / "etc" / "fstab"
    fstab.parent.mkdir(parents=True, exist_ok=True)
    fstab.write_text(templates.fstab(uuid), encoding="utf-8")
    log.debug(f"fstab root UUID={uuid}")
    return uuid


def write_apt_and_locale(mountpoint: Path, distro: str) -> None:
    sources = mountpoint / "etc" / "apt" / "sources.list"
    sources.parent.mkdir(parents=True, exist_ok=True)
    sources.write_text(templates.apt_sources(distro) + "\n", encoding="utf-8")

    locale = mountpoint / "etc" / "default" / "locale"
    locale.parent.mkdir(parents=True, exist_ok=True)
    locale.write_text(templates.locale_cfg(), encoding="utf-8")


def configure_wifi(mountpoint: Path) -> None:
    """Leave wpa_supplicant to dhcpcd instead of its own systemd unit."""
    (mountpoint / WPA_SERVICE_LINK).unlink(missing_ok=True)

    conf = mountpoint / "etc" / "wpa_supplicant" / "wpa_supplicant.conf"
    conf.parent.mkdir(parents=True, exist_ok=True)
    conf.write_text(templates.wpa_supplicant_conf(), encoding="utf-8")

    hook = mountpoint / DHCPCD_WPA_HOOK
    if not hook.is_file():
        raise MissingFileError(hook)
    hooks_dir = mountpoint / DHCPCD_HOOKS_DIR
    hooks_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(hook, hooks_dir / hook.name)


def uncomment_matching(path: Path, patterns) -> bool:
    """Strip leading ``#`` from lines matching any pattern.

    Already uncommented lines are left as they are, so this is safe to rerun.

    Returns:
        True if the file changed
    """
    original = path.read_text(encoding="utf-8")
    regexes = [re.compile(pattern) for pattern in patterns]
    lines = []
    for line in original.splitlines(keepends=True):
        if any(regex.search(line) for regex in regexes):
            line = _COMMENT_PREFIX.sub("", line, count=1)
        lines.append(line)
    updated = "".join(lines)
    if updated != original:
        path.write_text(updated, encoding="utf-8")
        return True
    return False


def enable_shell_aliases(mountpoint: Path) -> None:
    for relative, patterns in ALIAS_LINES:
        dotfile = mountpoint / relative
        if not dotfile.is_file():
            log.warning(f"{dotfile} not found, aliases not enabled")
            continue
        uncomment_matching(dotfile, patterns)


def install_motd(mountpoint: Path) -> None:
    install_file(bundled_file("motd-r5s"), mountpoint / "etc" / "motd", 0o644)


def set_hostname(mountpoint: Path, hostname: str) -> None:
    (mountpoint / "etc" / "hostname").write_text(f"{hostname}\n", encoding="utf-8")
    hosts = mountpoint / "etc" / "hosts"
    current = hosts.read_text(encoding="utf-8") if hosts.is_file() else ""
    hosts.write_text(templates.hosts_with_hostname(current, hostname), encoding="utf-8")


def create_account(mountpoint: Path, account: Account) -> None:
    """Create the login account with an expired password. Failure is fatal."""
    try:
        run_checked_command(
            chroot_command(
                mountpoint, "/usr/sbin/useradd", "-m", account.name, "-s", "/bin/bash", "-U"
            )
        )
        run_checked_command(
            chroot_command(mountpoint, "/usr/sbin/chpasswd", "-c", "YESCRYPT"),
            input_text=f"{account.name}:{account.password}\n",
        )
        # operator must choose a new password on first login
        run_checked_command(chroot_command(mountpoint, "/usr/bin/passwd", "-e", account.name))
    except CommandError as error:
        raise AccountError(account.name, str(error)) from error
    log.info(f"created account {account.name}")


def grant_sudo(mountpoint: Path, name: str) -> Path:
    """Passwordless sudo for ``name`` through a read-only sudoers fragment."""
    fragment = mountpoint / "etc" / "sudoers.d" / name
    fragment.parent.mkdir(parents=True, exist_ok=True)
    fragment.unlink(missing_ok=True)
    fd = os.open(fragment, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SUDOERS_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(templates.sudoers_fragment(name))
    os.chmod(fragment, SUDOERS_MODE)
    return fragment


def install_expansion_script(mountpoint: Path) -> None:
    install_file(bundled_file("rc.local"), mountpoint / "etc" / "rc.local", SCRIPT_MODE)


def reset_ssh_identity(mountpoint: Path) -> list[Path]:
    """Disable sshd until first boot and delete every host key."""
    removed = []
    for relative in SSH_SERVICE_FILES:
        path = mountpoint / relative
        if path.is_symlink() or path.exists():
            path.unlink()
            removed.append(path)
    for key in sorted((mountpoint / "etc" / "ssh").glob("ssh_host_*")):
        key.unlink()
        removed.append(key)
    return removed


def seed_authorized_keys(mountpoint: Path, name: str, ssh_key: str) -> Path:
    home = Path("/home") / name
    ssh_dir = mountpoint / home.relative_to("/") / ".ssh"
    ssh_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(ssh_dir, SSH_DIR_MODE)
    keys = ssh_dir / "authorized_keys"
    keys.write_text(ssh_key.strip() + "\n", encoding="utf-8")
    os.chmod(keys, AUTHORIZED_KEYS_MODE)
    run_checked_command(
        chroot_command(mountpoint, "/usr/bin/chown", "-R", f"{name}:{name}", f"{home}/.ssh")
    )
    log.info(f"seeded authorized_keys for {name}")
    return keys


def remove_machine_id(mountpoint: Path) -> None:
    (mountpoint / "etc" / "machine-id").unlink(missing_ok=True)


def generate_extlinux(mountpoint: Path) -> None:
    run_checked_command(chroot_command(mountpoint, "/boot/mk_extlinux"))


def trim_free_space(mountpoint: Path) -> None:
    run_command(["fstrim", "-v", str(mountpoint)])


def post_process(
    mountpoint: Path,
    config: RunConfig,
    target: MediaTarget,
    *,
    ssh_key: Optional[str] = None,
) -> None:
    """Configure the copied root for first boot on the NanoPi."""
    mountpoint = Path(mountpoint)
    ssh_key = ssh_key if ssh_key is not None else config.ssh_key

    write_fstab(mountpoint)
    write_apt_and_locale(mountpoint, config.distro)
    configure_wifi(mountpoint)
    enable_shell_aliases(mountpoint)
    if config.motd and (FILES_DIR / "motd-r5s").is_file():
        install_motd(mountpoint)
    set_hostname(mountpoint, config.hostname)

    create_account(mountpoint, config.account)
    grant_sudo(mountpoint, config.account.name)

    install_expansion_script(mountpoint)
    generate_extlinux(mountpoint)

    reset_ssh_identity(mountpoint)
    if ssh_key:
        seed_authorized_keys(mountpoint, config.account.name, ssh_key)
    remove_machine_id(mountpoint)

    if target.should_trim:
        trim_free_space(mountpoint)
