"""
Typed document model.
A document is a version, a mapping of globals and an ordered list of steps,
each step carrying exactly one operation spec.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from .exceptions import DocumentShapeError


@dataclass
class ShellSpec:
    """Run a command string through a shell."""
    command: str
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    shell: Optional[str] = None

    kind = "shell"


@dataclass
class ExecSpec:
    """Run a program directly with an argument list."""
    cmd: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    kind = "exec"


@dataclass
class ConfSpec:
    """Write a rendered template to a file."""
    dest: str
    template: str
    backup: bool = False
    mode: Optional[str] = None

    kind = "conf"


@dataclass
class SshAuth:
    """Authentication descriptor for an ssh step ('password' or 'key')."""
    kind: str
    key_path: Optional[str] = None
    password: Optional[str] = None
    passphrase: Optional[str] = None


@dataclass
class SshSpec:
    """Run a command on a remote host through the ssh client."""
    host: str
    command: str
    user: Optional[str] = None
    auth: Optional[SshAuth] = None
    env: Dict[str, str] = field(default_factory=dict)
    check_host: Optional[str] = None
    fingerprint: Optional[str] = None

    kind = "ssh"


Operation = Union[ShellSpec, ExecSpec, ConfSpec, SshSpec]

OPERATION_KINDS = ("shell", "exec", "conf", "ssh")


@dataclass
class Step:
    """
    One element of the ordered step sequence.

    Exactly one of shell/exec/conf/ssh must be set; `operation` enforces it.
    """
    index: int
    name: Optional[str] = None
    when: Optional[bool] = None
    timeout: Optional[float] = None
    retry: Optional[int] = None
    env: Dict[str, str] = field(default_factory=dict)
    shell: Optional[ShellSpec] = None
    exec: Optional[ExecSpec] = None
    conf: Optional[ConfSpec] = None
    ssh: Optional[SshSpec] = None

    def populated_kinds(self) -> List[str]:
        return [kind for kind in OPERATION_KINDS if getattr(self, kind) is not None]

    @property
    def operation(self) -> Operation:
        """The single populated operation spec."""
        kinds = self.populated_kinds()
        if len(kinds) != 1:
            found = ", ".join(kinds) if kinds else "none"
            raise DocumentShapeError(
                f"Step {self.index + 1} must define exactly one of "
                f"{list(OPERATION_KINDS)}, found: {found}"
            )
        return getattr(self, kinds[0])

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        kinds = self.populated_kinds()
        return kinds[0] if len(kinds) == 1 else "step"


@dataclass
class Document:
    """A loaded, validated step document."""
    version: int
    globals: Mapping[str, Any]
    steps: List[Step]


@dataclass
class HostKeyPin:
    """A host whose key must match a SHA256 fingerprint before ssh connects."""
    host: str
    fingerprint: str


@dataclass
class RenderedCommand:
    """Fully rendered invocation of a shell, exec or ssh step."""
    kind: str
    label: str
    argv: List[str]
    env: Dict[str, str]
    cwd: Optional[str] = None
    host_pin: Optional[HostKeyPin] = None

    @property
    def program(self) -> str:
        return self.argv[0]


@dataclass
class RenderedFile:
    """Fully rendered conf step."""
    dest: str
    content: str
    backup: bool = False
    mode: Optional[str] = None

    kind = "conf"

    @property
    def label(self) -> str:
        return f"write {self.dest}"
