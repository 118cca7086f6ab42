"""Document loader and strict shape validation."""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from steprunner.document import (
    OPERATION_KINDS,
    ConfSpec,
    Document,
    ExecSpec,
    ShellSpec,
    SshAuth,
    SshSpec,
    Step,
)
from steprunner.exceptions import ValidationError, DocumentValidationError
from steprunner.exec.ssh import CHECK_HOST_POLICIES, CHECK_HOST_FINGERPRINT


class PreservingLoader(yaml.SafeLoader):
    """Custom YAML loader that keeps YAML 1.1 surprises as plain strings.

    YAML 1.1 would turn 'yes', 'no', 'on' and 'off' into booleans, which
    breaks values such as `check_host: no`, and would read `mode: 0600` as
    the octal integer 384. Only true/false are booleans here, and integers
    with a leading zero stay strings.
    """
    pass


# Drop every implicit bool and int resolver, then re-register narrower ones
PreservingLoader.yaml_implicit_resolvers = {
    first: [
        (tag, regexp) for tag, regexp in resolvers
        if tag not in ('tag:yaml.org,2002:bool', 'tag:yaml.org,2002:int')
    ]
    for first, resolvers in PreservingLoader.yaml_implicit_resolvers.items()
}
PreservingLoader.add_implicit_resolver(
    'tag:yaml.org,2002:bool',
    re.compile(r'^(?:true|True|TRUE|false|False|FALSE)$'),
    list('tTfF'),
)
PreservingLoader.add_implicit_resolver(
    'tag:yaml.org,2002:int',
    re.compile(r'''^(?:[-+]?0b[0-1_]+
                    |[-+]?(?:0|[1-9][0-9_]*)
                    |[-+]?0x[0-9a-fA-F_]+)$''', re.X),
    list('-+0123456789'),
)


class DocumentLoader:
    """Loads and validates step documents with strict shape enforcement."""

    SUPPORTED_VERSIONS = {1}

    TOP_LEVEL_FIELDS = {'version', 'globals', 'steps'}
    STEP_FIELDS = {'name', 'when', 'timeout', 'retry', 'env'} | set(OPERATION_KINDS)
    SHELL_FIELDS = {'command', 'env', 'cwd', 'shell'}
    EXEC_FIELDS = {'cmd', 'args', 'env', 'cwd'}
    CONF_FIELDS = {'dest', 'template', 'backup', 'mode'}
    SSH_FIELDS = {'host', 'user', 'auth', 'command', 'env', 'check_host', 'fingerprint'}
    AUTH_FIELDS = {'kind', 'key_path', 'password', 'passphrase'}
    AUTH_KINDS = {'password', 'key'}

    def __init__(self):
        """Initialize loader."""
        self.errors: List[ValidationError] = []

    def load(self, document_path: Path) -> Document:
        """Load and validate a document file."""
        self.errors = []
        try:
            with open(document_path, 'r') as f:
                raw = yaml.load(f, Loader=PreservingLoader)
        except (OSError, yaml.YAMLError) as e:
            self._add_error(f"Failed to load document: {e}")
            self._raise_validation_errors()

        return self.load_data(raw)

    def load_string(self, text: str) -> Document:
        """Load and validate a document from YAML text."""
        self.errors = []
        try:
            raw = yaml.load(text, Loader=PreservingLoader)
        except yaml.YAMLError as e:
            self._add_error(f"Failed to parse document: {e}")
            self._raise_validation_errors()

        return self.load_data(raw)

    def load_data(self, raw: Any) -> Document:
        """Validate already parsed data and build the typed document."""
        self.errors = []
        if raw is None or not isinstance(raw, dict):
            self._add_error("Document must be a YAML object/dictionary")
            self._raise_validation_errors()

        # Version validation
        version = raw.get('version')
        if version is None:
            self._add_error("'version' field is required")
        elif isinstance(version, bool) or not isinstance(version, int):
            self._add_error(f"'version' field must be an integer, got {type(version).__name__}")
        elif version not in self.SUPPORTED_VERSIONS:
            self._add_error(f"Unsupported version '{version}'. Supported: {self.SUPPORTED_VERSIONS}")

        for key in raw.keys():
            if key not in self.TOP_LEVEL_FIELDS:
                self._add_error(f"Unknown top-level field '{key}'")

        globals_ = raw.get('globals')
        if globals_ is None:
            globals_ = {}
        elif not isinstance(globals_, dict):
            self._add_error("'globals' must be a dictionary")
            globals_ = {}

        steps = []
        raw_steps = raw.get('steps')
        if not raw_steps:
            self._add_error("'steps' field is required and must not be empty")
        elif not isinstance(raw_steps, list):
            self._add_error("'steps' must be a list")
        else:
            for i, raw_step in enumerate(raw_steps):
                step = self._build_step(i, raw_step)
                if step is not None:
                    steps.append(step)

        if self.errors:
            self._raise_validation_errors()

        return Document(version=version, globals=globals_, steps=steps)

    def _build_step(self, index: int, raw: Any) -> Optional[Step]:
        """Validate one step and convert it to a Step."""
        label = f"Step {index + 1}"
        if not isinstance(raw, dict):
            self._add_error(f"{label} must be a dictionary")
            return None

        name = raw.get('name')
        if name is not None:
            if not isinstance(name, str):
                self._add_error(f"{label} name must be a string, got {type(name).__name__}")
                name = None
            else:
                label = f"Step {index + 1} '{name}'"

        for key in raw.keys():
            if key not in self.STEP_FIELDS:
                self._add_error(f"{label}: unknown field '{key}'")

        # Exactly one operation block
        present = [kind for kind in OPERATION_KINDS if raw.get(kind) is not None]
        if not present:
            self._add_error(f"{label}: requires one of {list(OPERATION_KINDS)}")
        elif len(present) > 1:
            self._add_error(f"{label}: mutually exclusive fields {present}")

        when = raw.get('when')
        if when is not None and not isinstance(when, bool):
            self._add_error(f"{label}: when must be a boolean")

        timeout = raw.get('timeout')
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                self._add_error(f"{label}: timeout must be a positive number of seconds")
                timeout = None

        retry = raw.get('retry')
        if retry is not None:
            if isinstance(retry, bool) or not isinstance(retry, int) or retry < 0:
                self._add_error(f"{label}: retry must be a non-negative integer")
                retry = None

        step = Step(
            index=index,
            name=name,
            when=when if isinstance(when, bool) else None,
            timeout=timeout,
            retry=retry,
            env=self._string_map(raw.get('env'), f"{label} env"),
        )

        if raw.get('shell') is not None:
            step.shell = self._build_shell(raw['shell'], label)
        if raw.get('exec') is not None:
            step.exec = self._build_exec(raw['exec'], label)
        if raw.get('conf') is not None:
            step.conf = self._build_conf(raw['conf'], label)
        if raw.get('ssh') is not None:
            step.ssh = self._build_ssh(raw['ssh'], label)

        return step

    def _build_shell(self, raw: Any, label: str) -> Optional[ShellSpec]:
        context = f"{label} shell"
        if not self._check_block(raw, self.SHELL_FIELDS, context):
            return None
        return ShellSpec(
            command=self._required_string(raw, 'command', context),
            env=self._string_map(raw.get('env'), f"{context}.env"),
            cwd=self._optional_string(raw, 'cwd', context),
            shell=self._optional_string(raw, 'shell', context),
        )

    def _build_exec(self, raw: Any, label: str) -> Optional[ExecSpec]:
        context = f"{label} exec"
        if not self._check_block(raw, self.EXEC_FIELDS, context):
            return None

        args = raw.get('args')
        if args is None:
            args = []
        elif not isinstance(args, list):
            self._add_error(f"{context}: args must be a list")
            args = []
        else:
            converted = []
            for i, arg in enumerate(args):
                value = self._scalar_to_string(arg)
                if value is None:
                    self._add_error(f"{context}: args[{i}] must be a scalar")
                else:
                    converted.append(value)
            args = converted

        return ExecSpec(
            cmd=self._required_string(raw, 'cmd', context),
            args=args,
            env=self._string_map(raw.get('env'), f"{context}.env"),
            cwd=self._optional_string(raw, 'cwd', context),
        )

    def _build_conf(self, raw: Any, label: str) -> Optional[ConfSpec]:
        context = f"{label} conf"
        if not self._check_block(raw, self.CONF_FIELDS, context):
            return None

        backup = raw.get('backup', False)
        if not isinstance(backup, bool):
            self._add_error(f"{context}: backup must be a boolean")
            backup = False

        mode = raw.get('mode')
        if mode is not None:
            if isinstance(mode, bool) or not isinstance(mode, (str, int)):
                self._add_error(f"{context}: mode must be an octal string such as '644'")
                mode = None
            else:
                mode = str(mode)

        return ConfSpec(
            dest=self._required_string(raw, 'dest', context),
            template=self._required_string(raw, 'template', context),
            backup=backup,
            mode=mode,
        )

    def _build_ssh(self, raw: Any, label: str) -> Optional[SshSpec]:
        context = f"{label} ssh"
        if not self._check_block(raw, self.SSH_FIELDS, context):
            return None

        check_host = raw.get('check_host')
        if check_host is True:
            check_host = 'yes'
        elif check_host is False:
            check_host = 'no'
        if check_host is not None and check_host not in CHECK_HOST_POLICIES:
            self._add_error(f"{context}: check_host must be one of {list(CHECK_HOST_POLICIES)}")
            check_host = None

        fingerprint = self._optional_string(raw, 'fingerprint', context)
        if check_host == CHECK_HOST_FINGERPRINT and not fingerprint:
            self._add_error(f"{context}: check_host 'fingerprint' requires a 'fingerprint' value")

        return SshSpec(
            host=self._required_string(raw, 'host', context),
            command=self._required_string(raw, 'command', context),
            user=self._optional_string(raw, 'user', context),
            auth=self._build_auth(raw.get('auth'), context),
            env=self._string_map(raw.get('env'), f"{context}.env"),
            check_host=check_host,
            fingerprint=fingerprint,
        )

    def _build_auth(self, raw: Any, context: str) -> Optional[SshAuth]:
        if raw is None:
            return None
        context = f"{context}.auth"
        if not self._check_block(raw, self.AUTH_FIELDS, context):
            return None

        kind = raw.get('kind')
        if kind not in self.AUTH_KINDS:
            self._add_error(f"{context}: kind must be one of {sorted(self.AUTH_KINDS)}")
        key_path = self._optional_string(raw, 'key_path', context)
        if kind == 'key' and not key_path:
            self._add_error(f"{context}: kind 'key' requires 'key_path'")

        return SshAuth(
            kind=str(kind),
            key_path=key_path,
            password=self._optional_string(raw, 'password', context),
            passphrase=self._optional_string(raw, 'passphrase', context),
        )

    def _check_block(self, raw: Any, known_fields: set, context: str) -> bool:
        if not isinstance(raw, dict):
            self._add_error(f"{context} must be a dictionary")
            return False
        for key in raw.keys():
            if key not in known_fields:
                self._add_error(f"{context}: unknown field '{key}'")
        return True

    def _required_string(self, raw: Dict[str, Any], field: str, context: str) -> str:
        value = raw.get(field)
        if value is None:
            self._add_error(f"{context}: missing required '{field}' field")
            return ""
        if not isinstance(value, str):
            self._add_error(f"{context}: '{field}' must be a string, got {type(value).__name__}")
            return ""
        return value

    def _optional_string(self, raw: Dict[str, Any], field: str, context: str) -> Optional[str]:
        value = raw.get(field)
        if value is None:
            return None
        if not isinstance(value, str):
            self._add_error(f"{context}: '{field}' must be a string, got {type(value).__name__}")
            return None
        return value

    @staticmethod
    def _scalar_to_string(value: Any) -> Optional[str]:
        """Numbers and booleans are accepted where strings are expected."""
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, (str, int, float)):
            return str(value)
        return None

    def _string_map(self, raw: Any, context: str) -> Dict[str, str]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            self._add_error(f"{context} must be a dictionary")
            return {}

        result = {}
        for key, value in raw.items():
            converted = self._scalar_to_string(value)
            if converted is None:
                self._add_error(f"{context}: value of '{key}' must be a scalar")
                continue
            result[str(key)] = converted
        return result

    def _add_error(self, message: str, path: str = "", exit_code: int = 2):
        """Add validation error."""
        self.errors.append(ValidationError(message, path, exit_code))

    def _raise_validation_errors(self):
        """Raise DocumentValidationError with accumulated errors."""
        raise DocumentValidationError(self.errors)
