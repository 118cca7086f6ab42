"""
Remote command construction for ssh steps.

Builds the argv for the local ssh client: host-key policy options, identity
file, user@host target and a final argument carrying inline KEY=value exports
followed by the remote command.
"""

import base64
import binascii
import hashlib
import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import List, Mapping, Optional

from ..document import HostKeyPin
from ..exceptions import HostKeyVerificationError, SpawnError

logger = logging.getLogger(__name__)

SSH_PROGRAM = "ssh"
KEYSCAN_PROGRAM = "ssh-keyscan"
KEYSCAN_TIMEOUT_SEC = 10

CHECK_HOST_YES = "yes"
CHECK_HOST_NO = "no"
CHECK_HOST_FINGERPRINT = "fingerprint"
CHECK_HOST_POLICIES = (CHECK_HOST_YES, CHECK_HOST_NO, CHECK_HOST_FINGERPRINT)

# Stands in for the per-launch known-hosts file until the key is verified
PINNED_KNOWN_HOSTS_PLACEHOLDER = "<pinned-known-hosts>"

DISABLE_HOST_CHECK_OPTIONS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
]


def env_export_prefix(env: Mapping[str, str]) -> str:
    """'A=1 B='two words' ' for the given mapping, or '' when empty."""
    if not env:
        return ""
    assigns = [f"{key}={shlex.quote(value)}" for key, value in env.items()]
    return " ".join(assigns) + " "


def with_known_hosts_file(argv: List[str], known_hosts_file: str) -> List[str]:
    """Swap the pinned-file placeholder in a prepared argv for the real file."""
    placeholder = f"UserKnownHostsFile={PINNED_KNOWN_HOSTS_PLACEHOLDER}"
    return [
        f"UserKnownHostsFile={known_hosts_file}" if arg == placeholder else arg
        for arg in argv
    ]


def build_ssh_argv(
    host: str,
    user: str,
    command: str,
    env: Optional[Mapping[str, str]] = None,
    check_host: Optional[str] = None,
    key_path: Optional[str] = None,
    known_hosts_file: Optional[str] = None,
) -> List[str]:
    """
    Build the ssh client argv for a remote command.

    Args:
        host: Rendered remote host
        user: Rendered remote user
        command: Rendered remote command
        env: Rendered environment exported inline before the command
        check_host: 'no' (default), 'yes' or 'fingerprint'
        key_path: Rendered identity file, passed with -i
        known_hosts_file: Pinned known-hosts file for the 'fingerprint' policy

    Returns:
        Full argument vector, program first
    """
    argv = [SSH_PROGRAM]

    if check_host is None or check_host == CHECK_HOST_NO:
        argv.extend(DISABLE_HOST_CHECK_OPTIONS)
    elif check_host == CHECK_HOST_FINGERPRINT:
        if not known_hosts_file:
            raise ValueError("fingerprint host check requires a pinned known-hosts file")
        argv.extend([
            "-o", "StrictHostKeyChecking=yes",
            "-o", f"UserKnownHostsFile={known_hosts_file}",
        ])
    # 'yes': rely on the client's own known_hosts

    if key_path:
        argv.extend(["-i", key_path])

    argv.append(f"{user}@{host}")
    argv.append(env_export_prefix(env or {}) + command)
    return argv


def key_fingerprint(key_blob_b64: str) -> str:
    """OpenSSH style SHA256 fingerprint of a base64 encoded public key blob."""
    blob = base64.b64decode(key_blob_b64)
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def normalize_fingerprint(fingerprint: str) -> str:
    fingerprint = fingerprint.strip()
    if not fingerprint.startswith("SHA256:"):
        fingerprint = "SHA256:" + fingerprint
    return fingerprint.rstrip("=")


def matching_host_keys(keyscan_output: str, fingerprint: str) -> List[str]:
    """
    Select the known-hosts lines from ssh-keyscan output whose key matches.

    Lines look like '<host> <key-type> <base64-blob>'; comments are ignored.
    """
    wanted = normalize_fingerprint(fingerprint)
    matches = []
    for line in keyscan_output.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 3:
            continue
        try:
            if key_fingerprint(parts[2]) == wanted:
                matches.append(line)
        except (binascii.Error, ValueError):
            logger.debug(f"Ignoring unparsable keyscan line: {line}")
    return matches


def verify_host_key(pin: HostKeyPin) -> Path:
    """
    Scan the host's keys, check them against the pin and write known_hosts.

    The file is created with mkstemp, so it is new, owner-only and not at a
    predictable path. The caller removes it when done.

    Returns:
        Path of the written known-hosts file

    Raises:
        SpawnError: ssh-keyscan could not be started
        HostKeyVerificationError: No scanned key matches the fingerprint
    """
    argv = [KEYSCAN_PROGRAM, "-T", str(KEYSCAN_TIMEOUT_SEC), pin.host]
    logger.debug(f"Scanning host keys: {' '.join(argv)}")
    try:
        result = subprocess.run(argv, capture_output=True, text=True)
    except OSError as e:
        raise SpawnError(KEYSCAN_PROGRAM, e) from e

    matches = matching_host_keys(result.stdout, pin.fingerprint)
    if not matches:
        raise HostKeyVerificationError(
            f"No host key of '{pin.host}' matches fingerprint {pin.fingerprint}"
        )

    fd, path = tempfile.mkstemp(prefix="steprunner-known-hosts-")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write("\n".join(matches) + "\n")
    known_hosts = Path(path)
    logger.info(f"Host key of {pin.host} verified against {pin.fingerprint}")
    return known_hosts
