"""Text of the configuration files written into the target root."""

from __future__ import annotations

APT_COMPONENTS = "main contrib non-free non-free-firmware"

LOCALE_VARIABLES = (
    "LANG",
    "LANGUAGE",
    "LC_CTYPE",
    "LC_NUMERIC",
    "LC_TIME",
    "LC_COLLATE",
    "LC_MONETARY",
    "LC_MESSAGES",
    "LC_PAPER",
    "LC_NAME",
    "LC_ADDRESS",
    "LC_TELEPHONE",
    "LC_MEASUREMENT",
    "LC_IDENTIFICATION",
    "LC_ALL",
)

# Left empty so they inherit from LANG / are not forced
UNSET_LOCALE_VARIABLES = {"LANGUAGE", "LC_ALL"}


def kernel_img_conf() -> str:
    return "link_in_boot = 1\ndo_symlinks = 0\n"


def fstab(uuid: str) -> str:
    return (
        "# if editing the device name for the root entry, it is necessary\n"
        "# to regenerate the extlinux.conf file by running /boot/mk_extlinux\n"
        "\n"
        "# <device>\t\t\t\t\t<mount>\t<type>\t<options>\t\t<dump> <pass>\n"
        f"UUID={uuid}\t/\txfs\terrors=remount-ro\t0      1\n"
        "\n"
    )


def apt_sources(distro: str) -> str:
    lines = [
        "# For information about how to configure apt package sources,",
        "# see the sources.list(5) manual.",
        "",
    ]
    for suite_url, suite in (
        ("http://deb.debian.org/debian", distro),
        ("http://deb.debian.org/debian-security", f"{distro}-security"),
        ("http://deb.debian.org/debian", f"{distro}-updates"),
    ):
        lines.append(f"deb {suite_url} {suite} {APT_COMPONENTS}")
        lines.append(f"#deb-src {suite_url} {suite} {APT_COMPONENTS}")
        lines.append("")
    return "\n".join(lines) + "\n"


def locale_cfg(locale: str = "C.UTF-8") -> str:
    lines = []
    for name in LOCALE_VARIABLES:
        if name in UNSET_LOCALE_VARIABLES:
            lines.append(f"{name}=")
        else:
            lines.append(f'{name}="{locale}"')
    return "\n".join(lines) + "\n\n"


def wpa_supplicant_conf() -> str:
    return (
        "ctrl_interface=DIR=/var/run/wpa_supplicant GROUP=netdev\n"
        "update_config=1\n"
        "\n"
    )


def hosts_with_hostname(hosts: str, hostname: str) -> str:
    """Add a ``127.0.1.1`` entry for ``hostname`` after the localhost line."""
    entry = f"127.0.1.1\t{hostname}"
    kept = [line for line in hosts.splitlines() if not line.startswith("127.0.1.1")]
    result = []
    inserted = False
    for line in kept:
        result.append(line)
        if not inserted and line.split()[:2] == ["127.0.0.1", "localhost"]:
            result.append(entry)
            inserted = True
    if not inserted:
        result.insert(0, entry)
        result.insert(0, "127.0.0.1\tlocalhost")
    return "\n".join(result) + "\n"


def sudoers_fragment(account: str) -> str:
    return f"{account} ALL=(ALL) NOPASSWD: ALL\n"
