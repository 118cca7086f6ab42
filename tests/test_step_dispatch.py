"""Tests for step dispatch: guards, preview mode, fail-fast and error wrapping."""

import os
import sys
from unittest.mock import patch

import pytest

from steprunner.document import ConfSpec, Document, ExecSpec, ShellSpec, SshSpec, Step
from steprunner.exceptions import (
    DocumentShapeError,
    ExitError,
    SpawnError,
    StepFailedError,
    TemplateRenderError,
)
from steprunner.templating import snapshot_environment
from steprunner.workflow.executor import DocumentExecutor, StepStatus


def make_executor(steps, globals_=None, dry_run=False, retry_delay_ms=0):
    document = Document(version=1, globals=globals_ or {}, steps=steps)
    ambient = snapshot_environment({'PATH': os.environ.get('PATH', '/usr/bin:/bin'), 'USER': 'ops'})
    return DocumentExecutor(document, dry_run=dry_run, ambient=ambient, retry_delay_ms=retry_delay_ms)


class TestGuards:
    """Test when-guard handling."""

    def test_false_guard_skips_without_rendering(self, capsys):
        """A skipped step renders nothing, even invalid templates."""
        steps = [Step(index=0, when=False, env={'X': '{{ undefined }}'},
                      shell=ShellSpec(command="{{ also_undefined }}"))]
        executor = make_executor(steps)
        with patch("steprunner.exec.step_executor.run_and_stream") as mock_run, \
                patch("steprunner.exec.step_executor.merge_env") as mock_merge:
            assert executor.execute() == [StepStatus.SKIPPED]
        mock_run.assert_not_called()
        mock_merge.assert_not_called()
        assert "==[1]" not in capsys.readouterr().out

    def test_false_guard_writes_no_file(self, tmp_path):
        dest = tmp_path / "skipped.conf"
        steps = [Step(index=0, when=False, conf=ConfSpec(dest=str(dest), template="x"))]
        make_executor(steps).execute()
        assert not dest.exists()

    def test_skipped_step_continues_to_next(self, capsys):
        """Execution proceeds after a skipped step."""
        steps = [
            Step(index=0, when=False, shell=ShellSpec(command="echo first")),
            Step(index=1, when=True, shell=ShellSpec(command="echo second")),
        ]
        statuses = make_executor(steps).execute()
        assert statuses == [StepStatus.SKIPPED, StepStatus.SUCCEEDED]
        out = capsys.readouterr().out
        assert "[shell][out] second" in out
        assert "first" not in out


class TestShapeErrors:
    """Test dispatch-time rejection of malformed steps."""

    def test_no_operation(self):
        """A step without an operation fails naming its index."""
        executor = make_executor([Step(index=2, name="broken")])
        with pytest.raises(StepFailedError) as exc_info:
            executor.execute()
        assert exc_info.value.index == 2
        assert isinstance(exc_info.value.cause, DocumentShapeError)
        assert "Step 3" in str(exc_info.value.cause)

    def test_multiple_operations(self):
        """Two populated operations are never silently resolved."""
        step = Step(index=0, shell=ShellSpec(command="true"), exec=ExecSpec(cmd="true"))
        with patch("steprunner.exec.step_executor.run_and_stream") as mock_run:
            with pytest.raises(StepFailedError) as exc_info:
                make_executor([step]).execute()
        mock_run.assert_not_called()
        assert isinstance(exc_info.value.cause, DocumentShapeError)


class TestPreviewMode:
    """Test that dry runs never spawn or write."""

    def test_shell_preview_prints_header_once(self, capsys):
        """Scenario: echo {{name}} with name=hi prints 'echo hi' without spawning."""
        steps = [Step(index=0, shell=ShellSpec(command="echo {{name}}"))]
        executor = make_executor(steps, {'name': 'hi'}, dry_run=True)
        with patch("steprunner.exec.step_executor.run_and_stream") as mock_run:
            assert executor.execute() == [StepStatus.SUCCEEDED]
        mock_run.assert_not_called()
        out = capsys.readouterr().out
        assert out.count("==[1] shell ==") == 1
        assert out.count("-> echo hi") == 1

    def test_every_kind_is_side_effect_free(self, tmp_path, capsys):
        """No kind spawns a process or touches the filesystem in preview."""
        dest = tmp_path / "sub" / "app.conf"
        steps = [
            Step(index=0, shell=ShellSpec(command="touch {{ marker }}")),
            Step(index=1, exec=ExecSpec(cmd="/nonexistent/binary", args=["{{ marker }}"])),
            Step(index=2, conf=ConfSpec(dest=str(dest), template="v={{ marker }}\n", backup=True, mode="600")),
            Step(index=3, ssh=SshSpec(host="web1", command="rm -rf /tmp/x", check_host="fingerprint",
                                      fingerprint="SHA256:abc")),
        ]
        executor = make_executor(steps, {'marker': str(tmp_path / "marker")}, dry_run=True)
        with patch("steprunner.exec.process.subprocess.Popen") as mock_popen, \
                patch("steprunner.exec.ssh.subprocess.run") as mock_run:
            statuses = executor.execute()

        assert statuses == [StepStatus.SUCCEEDED] * 4
        mock_popen.assert_not_called()
        mock_run.assert_not_called()
        assert not (tmp_path / "marker").exists()
        assert not dest.parent.exists()
        out = capsys.readouterr().out
        assert "Content preview:\nv=" in out
        assert f"write {dest}" in out

    def test_preview_still_reports_render_errors(self):
        steps = [Step(index=0, shell=ShellSpec(command="echo {{ nope }}"))]
        with pytest.raises(StepFailedError) as exc_info:
            make_executor(steps, dry_run=True).execute()
        assert isinstance(exc_info.value.cause, TemplateRenderError)


class TestExecution:
    """Test real execution through the dispatcher."""

    def test_shell_step_runs_with_layered_env(self, tmp_path, capsys):
        steps = [Step(
            index=0,
            env={'LAYER': 'step', 'FROM_STEP': 'yes'},
            shell=ShellSpec(command="echo $LAYER $FROM_STEP $USER", env={'LAYER': 'op'}, cwd=str(tmp_path)),
        )]
        make_executor(steps).execute()
        assert "[shell][out] op yes ops" in capsys.readouterr().out

    def test_custom_shell(self, capsys):
        """The shell program is split into program and leading args."""
        steps = [Step(index=0, shell=ShellSpec(command="print('from python')",
                                              shell=f"{sys.executable} -c"))]
        make_executor(steps).execute()
        assert "[shell][out] from python" in capsys.readouterr().out

    def test_exec_args_not_shell_interpreted(self, capsys):
        """Exec arguments reach the program verbatim; quoting is display only."""
        steps = [Step(index=0, exec=ExecSpec(
            cmd=sys.executable,
            args=["-c", "import sys; print(sys.argv[1])", "{{ value }}"],
        ))]
        make_executor(steps, {'value': "a b; $HOME 'q'"}).execute()
        out = capsys.readouterr().out
        assert "[exec][out] a b; $HOME 'q'" in out
        assert "-> " + sys.executable in out

    def test_conf_step_writes_file(self, tmp_path):
        dest = tmp_path / "conf" / "out.conf"
        steps = [Step(index=0, conf=ConfSpec(dest=str(dest), template="name={{ name }}\n", mode="600"))]
        make_executor(steps, {'name': 'svc'}).execute()
        assert dest.read_text() == "name=svc\n"

    def test_fail_fast(self, tmp_path, capsys):
        """A failing step stops the run; later steps never start."""
        marker = tmp_path / "ran"
        steps = [
            Step(index=0, name="boom", shell=ShellSpec(command="exit 4")),
            Step(index=1, shell=ShellSpec(command=f"touch {marker}")),
        ]
        with pytest.raises(StepFailedError) as exc_info:
            make_executor(steps).execute()
        assert exc_info.value.index == 0
        assert exc_info.value.name == "boom"
        assert isinstance(exc_info.value.cause, ExitError)
        assert exc_info.value.cause.exit_code == 4
        assert not marker.exists()

    def test_spawn_error_wrapped_with_chain(self):
        steps = [Step(index=0, exec=ExecSpec(cmd="/nonexistent/steprunner-binary"))]
        with pytest.raises(StepFailedError) as exc_info:
            make_executor(steps).execute()
        assert isinstance(exc_info.value.cause, SpawnError)
        chain = exc_info.value.chain()
        assert chain[0].startswith("SpawnError")
        assert any("FileNotFoundError" in message for message in chain)

    def test_context_is_not_mutated(self):
        """Globals are frozen for the duration of the run."""
        globals_ = {'items': ['a']}
        executor = make_executor([Step(index=0, shell=ShellSpec(command="true"))], globals_)
        with pytest.raises(TypeError):
            executor.context['new'] = 'x'
        executor.context['items'].append('b')
        assert globals_['items'] == ['a']


class TestRetryAndTimeout:
    """Test retry and timeout enforcement through the dispatcher."""

    def test_retry_relaunches_until_success(self, tmp_path, capsys):
        """A failing command is retried without re-rendering."""
        counter = tmp_path / "count"
        script = (
            f"n=$(cat {counter} 2>/dev/null || echo 0); n=$((n+1)); echo $n > {counter}; "
            "[ $n -ge 3 ]"
        )
        steps = [Step(index=0, retry=2, shell=ShellSpec(command=script))]
        assert make_executor(steps).execute() == [StepStatus.SUCCEEDED]
        assert counter.read_text().strip() == "3"
        assert capsys.readouterr().out.count("==[1] shell ==") == 1

    def test_retries_exhausted(self, tmp_path):
        counter = tmp_path / "count"
        steps = [Step(index=0, retry=1, shell=ShellSpec(command=f"echo x >> {counter}; exit 1"))]
        with pytest.raises(StepFailedError):
            make_executor(steps).execute()
        assert counter.read_text().count("x") == 2

    def test_spawn_errors_not_retried(self):
        steps = [Step(index=0, retry=3, exec=ExecSpec(cmd="/nonexistent/steprunner-binary"))]
        with patch("steprunner.exec.step_executor.run_and_stream",
                   side_effect=SpawnError("x", FileNotFoundError(2, "missing"))) as mock_run:
            with pytest.raises(StepFailedError):
                make_executor(steps).execute()
        assert mock_run.call_count == 1

    def test_timeout_passed_to_launcher(self):
        steps = [Step(index=0, timeout=2.5, exec=ExecSpec(cmd="true"))]
        with patch("steprunner.exec.step_executor.run_and_stream") as mock_run:
            make_executor(steps).execute()
        assert mock_run.call_args.kwargs['timeout_sec'] == 2.5
