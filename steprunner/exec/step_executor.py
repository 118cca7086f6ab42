"""
Step executor module: renders operations and runs them.

Each operation kind is prepared once into a RenderedCommand (shell, exec,
ssh) or a RenderedFile (conf). Preparation is side-effect free; launching
spawns the child or writes the file.
"""

import logging
import shlex
from typing import Any, List, Mapping, Optional, Union

from ..document import (
    ConfSpec,
    ExecSpec,
    HostKeyPin,
    RenderedCommand,
    RenderedFile,
    ShellSpec,
    SshSpec,
    Step,
)
from ..exceptions import AuthConfigError
from ..templating.renderer import TemplateRenderer
from .conf_writer import write_rendered_file
from .environment import merge_env
from .process import run_and_stream
from .retry import RetryPolicy
from . import ssh

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "sh -c"
DEFAULT_SSH_USER = "root"

Rendered = Union[RenderedCommand, RenderedFile]


class StepExecutor:
    """
    Prepares and launches the operation of a single step.
    Handles rendering, environment setup and process/file side effects.
    """

    def __init__(
        self,
        renderer: TemplateRenderer,
        context: Mapping[str, Any],
        ambient: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize step executor.

        Args:
            renderer: Template renderer shared by all steps
            context: Read-only global variables
            ambient: Ambient environment snapshot (default: the renderer's)
        """
        self.renderer = renderer
        self.context = context
        self.ambient = ambient if ambient is not None else renderer.ambient

    def render(self, text: str) -> str:
        return self.renderer.render(text, self.context)

    def prepare(self, step: Step) -> Rendered:
        """Render the step's single operation into its final form."""
        operation = step.operation
        if isinstance(operation, ShellSpec):
            return self.prepare_shell(step, operation)
        elif isinstance(operation, ExecSpec):
            return self.prepare_exec(step, operation)
        elif isinstance(operation, ConfSpec):
            return self.prepare_conf(step, operation)
        elif isinstance(operation, SshSpec):
            return self.prepare_ssh(step, operation)
        raise TypeError(f"Unknown operation type: {type(operation).__name__}")

    def prepare_shell(self, step: Step, spec: ShellSpec) -> RenderedCommand:
        command = self.render(spec.command)
        shell_argv = shlex.split(spec.shell or DEFAULT_SHELL)
        if not shell_argv:
            shell_argv = shlex.split(DEFAULT_SHELL)
        env = merge_env(self.ambient, step.env, spec.env, self.renderer, self.context)
        return RenderedCommand(
            kind="shell",
            label=command,
            argv=shell_argv + [command],
            env=env,
            cwd=spec.cwd,
        )

    def prepare_exec(self, step: Step, spec: ExecSpec) -> RenderedCommand:
        program = self.render(spec.cmd)
        args = [self.render(arg) for arg in spec.args]
        env = merge_env(self.ambient, step.env, spec.env, self.renderer, self.context)
        # Quoting is for display only; the child gets the raw args
        label = " ".join([program] + [shlex.quote(arg) for arg in args])
        return RenderedCommand(
            kind="exec",
            label=label,
            argv=[program] + args,
            env=env,
            cwd=spec.cwd,
        )

    def prepare_conf(self, step: Step, spec: ConfSpec) -> RenderedFile:
        return RenderedFile(
            dest=self.render(spec.dest),
            content=self.render(spec.template),
            backup=spec.backup,
            mode=spec.mode,
        )

    def prepare_ssh(self, step: Step, spec: SshSpec) -> RenderedCommand:
        host = self.render(spec.host)
        user = self.render(spec.user) if spec.user is not None else DEFAULT_SSH_USER
        command = self.render(spec.command)
        # Step-level env stays local; only the ssh block's env is exported remotely
        remote_env = self.renderer.render_map(spec.env, self.context) if spec.env else {}

        key_path = None
        if spec.auth is not None:
            if spec.auth.kind == "key":
                if not spec.auth.key_path:
                    raise AuthConfigError("ssh auth kind 'key' requires key_path")
                key_path = self.render(spec.auth.key_path)
                if not key_path.strip():
                    raise AuthConfigError(f"ssh key_path {spec.auth.key_path!r} rendered empty")
            elif spec.auth.kind == "password":
                logger.warning(
                    f"Step {step.index + 1}: password authentication is not supported, "
                    "relying on keys or the ssh agent"
                )
            else:
                raise AuthConfigError(f"Unknown ssh auth kind '{spec.auth.kind}'")

        host_pin = None
        if spec.check_host == ssh.CHECK_HOST_FINGERPRINT:
            if not spec.fingerprint:
                raise AuthConfigError("check_host 'fingerprint' requires a fingerprint")
            host_pin = HostKeyPin(host=host, fingerprint=self.render(spec.fingerprint))

        argv = ssh.build_ssh_argv(
            host=host,
            user=user,
            command=command,
            env=remote_env,
            check_host=spec.check_host,
            key_path=key_path,
            known_hosts_file=ssh.PINNED_KNOWN_HOSTS_PLACEHOLDER if host_pin else None,
        )
        return RenderedCommand(
            kind="ssh",
            label=" ".join(argv),
            argv=argv,
            env=dict(self.ambient),
            host_pin=host_pin,
        )

    def launch(
        self,
        rendered: Rendered,
        timeout_sec: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """
        Perform the side effect of a prepared step.

        Commands are relaunched per the retry policy; the rendered form is
        reused as is for every attempt.
        """
        if isinstance(rendered, RenderedFile):
            write_rendered_file(rendered)
            return

        policy = retry_policy or RetryPolicy()
        if rendered.host_pin is None:
            self.run_with_retries(rendered, rendered.argv, timeout_sec, policy)
            return

        known_hosts = ssh.verify_host_key(rendered.host_pin)
        try:
            argv = ssh.with_known_hosts_file(rendered.argv, str(known_hosts))
            self.run_with_retries(rendered, argv, timeout_sec, policy)
        finally:
            known_hosts.unlink(missing_ok=True)

    def run_with_retries(
        self,
        rendered: RenderedCommand,
        argv: List[str],
        timeout_sec: Optional[float],
        policy: RetryPolicy,
    ) -> None:
        attempt = 0
        while True:
            try:
                run_and_stream(
                    argv,
                    env=rendered.env,
                    cwd=rendered.cwd,
                    source=rendered.kind,
                    timeout_sec=timeout_sec,
                )
                return
            except Exception as e:
                if not policy.should_retry(e, attempt):
                    raise
                attempt += 1
                logger.warning(
                    f"{rendered.kind} attempt {attempt} failed ({e}), "
                    f"retrying ({attempt}/{policy.max_retries})"
                )
                policy.wait()
