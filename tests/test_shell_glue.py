"""Tests for shell-glue."""

import contextvars
import errno
import logging
import os
import signal
import sys
import tempfile

import pytest
from shell_glue import (
    IGNORE, RAISE, REDIRECTIONS, WARN, Cmd, CommandError, ExecutionError,
    ExitOutcome, ExternalCommand, FunctionCommand, PipeAllocationError,
    RedirectionStack, SpawnError, SpawnOptions, change_env, chdir, cmd,
    current_policy, describe, filter_char, filter_line, ignore_on_command_error,
    in_lines, in_s, io_s, io_ss, on_command_error, out_err_s, out_lines, out_s,
    out_ss, parse_command, pipe, popen, raise_on_command_error,
    redirect_stdin_to_file, redirect_stdout_to, redirect_stdout_to_file,
    redirect_to, run, run_and, run_async, run_or, run_seq, spawn, wait,
    warn_on_command_error,
)
from shell_glue.redirect import flush_streams


def _open_fds():
    return len(os.listdir("/proc/self/fd"))


class TestRun:
    """Test running single commands."""

    def test_exit_zero_is_true(self):
        assert run("true") is True

    def test_exit_one_is_false(self):
        assert run("false") is False

    def test_nonzero_exit_code(self):
        assert run("sh", "-c", "exit 3") is False

    def test_list_form(self):
        assert run(["sh", "-c", "exit 0"]) is True

    def test_callable_returns_its_value(self):
        assert run(lambda: 42) == 42
        assert run(lambda: False) is False

    def test_missing_program_raises_spawn_error(self):
        with pytest.raises(SpawnError) as exc_info:
            run("no-such-program-shell-glue")
        assert isinstance(exc_info.value.__cause__, FileNotFoundError)
        assert "no-such-program-shell-glue" in str(exc_info.value)

    def test_env_option(self):
        assert out_s("sh", "-c", "echo $SHELL_GLUE_VAR", env={"SHELL_GLUE_VAR": "x"}) == ("x\n", True)

    def test_cwd_option(self, tmp_path):
        output, ok = out_ss("pwd", cwd=tmp_path)
        assert ok
        assert os.path.realpath(output) == os.path.realpath(tmp_path)

    def test_stdout_option(self, tmp_path):
        path = tmp_path / "out.txt"
        with open(path, "w") as f:
            assert run("echo", "hello", stdout=f)
        assert path.read_text() == "hello\n"


class TestCapture:
    """Test output capture helpers."""

    def test_out_s_program(self):
        assert out_s("echo", "-n", "abc") == ("abc", True)

    def test_out_s_callable(self):
        assert out_s(lambda: sys.stdout.write("abc")) == ("abc", 3)

    def test_out_ss_strips(self):
        assert out_ss("echo", "abc") == ("abc", True)

    def test_python_and_program_output_keep_order(self):
        def mixed():
            print("one")
            run("echo", "two")
            print("three")
            return "done"

        assert out_s(mixed) == ("one\ntwo\nthree\n", "done")

    def test_undecodable_output(self):
        output, ok = out_s("printf", "\\377abc")
        assert ok is True
        assert len(output) == 4
        assert output[1:] == "abc"

    def test_out_err_s(self):
        output, ok = out_err_s("sh", "-c", "echo out; echo err >&2")
        assert ok
        assert "out\n" in output
        assert "err\n" in output

    def test_out_lines(self):
        assert out_lines("printf", "a\\nb\\n") == (["a\n", "b\n"], True)

    def test_out_lines_callback_program(self):
        lines = []
        assert out_lines("printf", "a\\nb\\n", callback=lines.append) is True
        assert lines == ["a\n", "b\n"]

    def test_out_lines_callback_callable(self):
        def produce():
            print("x")
            print("y")
            return True

        lines = []
        assert out_lines(produce, callback=lines.append) is True
        assert lines == ["x\n", "y\n"]

    def test_out_lines_callback_failure(self):
        assert out_lines("false", callback=lambda line: None) is False

    def test_capture_nested(self):
        def inner():
            return out_s("echo", "-n", "inner")

        assert out_s(inner) == ("", ("inner", True))


class TestInput:
    """Test input feeding helpers."""

    def test_in_s_callable(self):
        assert in_s("abc", lambda: sys.stdin.read()) == "abc"

    def test_in_s_program(self):
        assert in_s("abc", "grep", "-q", "b") is True
        assert in_s("abc", "grep", "-q", "z") is False

    def test_in_lines(self):
        assert in_lines(["b\n", "a\n"], lambda: sys.stdin.readlines()) == ["b\n", "a\n"]

    def test_io_s(self):
        assert io_s("abc", "tr", "ab", "AB") == ("ABc", True)

    def test_io_ss(self):
        assert io_ss("abc\n\n", "cat") == ("abc", True)


class TestPipe:
    """Test pipeline construction."""

    def test_two_programs(self):
        assert out_s(lambda: pipe(["echo", "-n", "abc"], ["tr", "ab", "AB"])) == ("ABc", True)

    def test_three_programs(self):
        output, ok = out_ss(
            lambda: pipe(["printf", "apple\\nbanana\\napricot\\n"], ["grep", "a"], ["wc", "-l"])
        )
        assert ok
        assert output.strip() == "3"

    def test_callable_middle_stage(self):
        output = out_s(lambda: pipe(
            ["printf", "a\\nb\\n"],
            lambda: filter_line(lambda line: line.upper()),
            "cat",
        ))
        assert output == ("A\nB\n", True)

    def test_callable_first_stage(self):
        output = out_s(lambda: pipe(lambda: sys.stdout.write("hello"), ["tr", "a-z", "A-Z"]))
        assert output == ("HELLO", True)

    def test_callable_last_stage_returns_value(self):
        assert pipe(["printf", "x\\ny\\n"], lambda: sys.stdin.read()) == "x\ny\n"

    def test_callables_only(self):
        assert pipe(lambda: print("hi"), lambda: sys.stdin.read()) == "hi\n"

    def test_many_callable_stages(self):
        stages = [lambda: filter_char(lambda ch: ch * 2) for _ in range(3)]
        assert pipe(lambda: sys.stdout.write("ab"), *stages, lambda: sys.stdin.read()) == "a" * 8 + "b" * 8

    def test_last_stage_defines_result(self):
        assert pipe(["echo", "x"], ["false"]) is False
        assert pipe(["false"], ["cat"]) is True

    def test_upstream_failure_not_raised(self):
        with raise_on_command_error():
            assert out_s(lambda: pipe(["sh", "-c", "echo x; exit 4"], "cat")) == ("x\n", True)

    def test_single_stage(self):
        assert pipe(["true"]) is True
        assert pipe(lambda: 7) == 7

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            pipe()

    def test_large_output_no_deadlock(self):
        output, ok = out_ss(lambda: pipe(lambda: sys.stdout.write("x" * 200000), ["wc", "-c"]))
        assert ok
        assert output.strip() == "200000"

    def test_early_consumer_exit(self):
        result = out_s(lambda: pipe(["sh", "-c", "echo line1; echo line2; echo line3"], ["head", "-1"]))
        assert result == ("line1\n", True)

    def test_undecodable_bytes_reach_last_stage(self):
        assert pipe(["printf", "\\377abc"], lambda: len(sys.stdin.read())) == 4

    @pytest.mark.skipif(not os.path.isdir("/proc/self/fd"), reason="needs /proc")
    def test_pipe_allocation_failure_closes_everything(self, monkeypatch):
        real_pipe = os.pipe
        calls = []

        def failing_pipe():
            calls.append(1)
            if len(calls) == 2:
                raise OSError(errno.EMFILE, "Too many open files")
            return real_pipe()

        baseline = _open_fds()
        monkeypatch.setattr(os, "pipe", failing_pipe)
        with pytest.raises(PipeAllocationError) as excinfo:
            pipe(lambda: print("a"), lambda: True, lambda: sys.stdin.read())
        monkeypatch.undo()
        assert len(calls) == 2
        assert excinfo.value.reason == "Too many open files"
        assert _open_fds() == baseline

    def test_stdin_redirection_reaches_first_stage(self):
        assert io_s("abc\n", lambda: pipe("cat", ["tr", "a", "A"])) == ("Abc\n", True)

    @pytest.mark.skipif(not os.path.isdir("/proc/self/fd"), reason="needs /proc")
    def test_no_descriptor_leak(self):
        baseline = _open_fds()
        out_s(lambda: pipe(["echo", "abc"], ["tr", "a", "A"], lambda: sys.stdin.read()))
        pipe(["echo", "x"], ["false"])
        pipe(lambda: print("y"), lambda: filter_line(str.upper), "cat")
        with pytest.raises(SpawnError):
            pipe(["echo", "x"], ["no-such-program-shell-glue"], ["cat"])
        with pytest.raises(SpawnError):
            pipe(["echo", "x"], ["no-such-program-shell-glue"])
        assert _open_fds() == baseline


class TestRedirection:
    """Test the redirection stack and scoped redirections."""

    def test_stack_push_pop_materialize(self):
        stack = RedirectionStack("test_stack")
        stack.push(1, 10)
        stack.push(2, 20)
        stack.push(1, 11)
        assert stack.materialize() == {1: 11, 2: 20}
        assert stack.pop() == (1, 11)
        assert stack.materialize() == {1: 10, 2: 20}
        assert len(stack) == 2

    def test_pop_empty(self):
        with pytest.raises(IndexError):
            RedirectionStack("test_empty").pop()

    def test_nested_unwinds_on_error(self):
        depth = len(REDIRECTIONS)
        with tempfile.TemporaryFile("w+") as outer, tempfile.TemporaryFile("w+") as inner:
            with redirect_stdout_to(outer):
                with pytest.raises(ValueError):
                    with redirect_stdout_to(inner):
                        assert REDIRECTIONS.materialize()[1] is inner
                        raise ValueError("boom")
                assert sys.stdout is outer
                assert REDIRECTIONS.materialize()[1] is outer
                run("echo", "to outer")
            outer.seek(0)
            inner.seek(0)
            assert outer.read() == "to outer\n"
            assert inner.read() == ""
        assert len(REDIRECTIONS) == depth

    def test_redirect_to_file(self, tmp_path):
        path = tmp_path / "out.txt"
        with redirect_stdout_to_file(path):
            print("from python")
            run("echo", "from echo")
        assert path.read_text() == "from python\nfrom echo\n"

    def test_redirect_stdin_from_file(self, tmp_path):
        path = tmp_path / "in.txt"
        path.write_text("abc")
        with redirect_stdin_to_file(path):
            assert out_s("tr", "a", "A") == ("Abc", True)

    def test_redirect_raw_descriptor(self, tmp_path):
        path = tmp_path / "raw.txt"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
        try:
            with redirect_to(1, "stdout", fd):
                print("python")
                run("echo", "program")
        finally:
            os.close(fd)
        assert path.read_text() == "python\nprogram\n"

    def test_descriptor_above_stderr_from_stack(self, tmp_path):
        path = tmp_path / "fd3.txt"
        with open(path, "w") as f, redirect_to(3, None, f):
            assert run("sh", "-c", "echo hi >&3") is True
        assert path.read_text() == "hi\n"

    def test_descriptor_above_stderr_option(self, tmp_path):
        path = tmp_path / "fd3.txt"
        with open(path, "w") as f:
            assert run(["sh", "-c", "echo hi >&3", {3: f}]) is True
        assert path.read_text() == "hi\n"

    def test_several_extra_descriptors(self, tmp_path):
        first, second = tmp_path / "first.txt", tmp_path / "second.txt"
        with open(first, "w") as f3, open(second, "w") as f4:
            with redirect_to(4, None, f3):
                run(["sh", "-c", "echo one >&3; echo two >&4", {3: f4}])
        assert first.read_text() == "two\n"
        assert second.read_text() == "one\n"

    def test_missing_program_with_extra_descriptor(self, tmp_path):
        with open(tmp_path / "fd3.txt", "w") as f:
            with pytest.raises(SpawnError):
                run(["no-such-program-shell-glue", {3: f}])

    def test_flush_failure_is_logged(self, caplog):
        class BrokenStream:
            closed = False

            def flush(self):
                raise OSError("broken pipe")

        caplog.set_level(logging.DEBUG, logger="shell_glue")
        flush_streams([BrokenStream()])
        assert "Could not flush" in caplog.text
        assert "broken pipe" in caplog.text

    def test_fd_only_redirection(self, tmp_path):
        path = tmp_path / "err.txt"
        with open(path, "w") as f, redirect_to(2, None, f):
            run("sh", "-c", "echo oops >&2")
        assert path.read_text() == "oops\n"

    def test_separate_contexts_do_not_share_stack(self):
        depth = len(REDIRECTIONS)

        def push_in_copy():
            REDIRECTIONS.push(1, 99)
            return len(REDIRECTIONS)

        assert contextvars.copy_context().run(push_in_copy) == depth + 1
        assert len(REDIRECTIONS) == depth


class TestErrorPolicy:
    """Test the command error policy."""

    def test_default_ignore(self):
        assert current_policy() is IGNORE
        assert run("false") is False

    def test_warn_logs_once(self, caplog):
        caplog.set_level(logging.WARNING, logger="shell_glue")
        with warn_on_command_error():
            assert run("false") is False
        records = [r for r in caplog.records if r.name == "shell_glue"]
        assert len(records) == 1
        assert "false: exited with 1" in records[0].getMessage()

    def test_raise(self):
        with pytest.raises(CommandError) as exc_info:
            with raise_on_command_error():
                run("sh", "-c", "exit 2")
        assert exc_info.value.cmdline == "sh -c 'exit 2'"
        assert exc_info.value.returncode == 2
        assert isinstance(exc_info.value.command, ExternalCommand)
        assert current_policy() is IGNORE

    def test_raise_signal_reason(self):
        with raise_on_command_error():
            with pytest.raises(CommandError) as exc_info:
                run("sh", "-c", "kill -TERM $$")
        assert exc_info.value.status.signal == signal.SIGTERM
        assert "killed by SIGTERM" in str(exc_info.value)

    def test_raise_in_pipeline_names_all_stages(self):
        with raise_on_command_error():
            with pytest.raises(CommandError) as exc_info:
                pipe(["echo", "x"], ["false"])
        assert exc_info.value.cmdline == "echo x | false"

    def test_nested_policies_restore(self):
        with raise_on_command_error():
            with ignore_on_command_error():
                assert run("false") is False
            assert current_policy() is RAISE
            with pytest.raises(CommandError):
                with warn_on_command_error():
                    assert current_policy() is WARN
                    raise CommandError(parse_command("false"), ExitOutcome(1))
            assert current_policy() is RAISE
        assert current_policy() is IGNORE

    def test_on_command_error_accepts_names(self):
        with on_command_error("raise") as policy:
            assert policy is RAISE

    def test_success_never_raises(self):
        with raise_on_command_error():
            assert run("true") is True

    def test_spawned_callable_exception(self):
        def boom():
            raise RuntimeError("boom")

        with raise_on_command_error():
            handle = spawn(boom)
            with pytest.raises(ExecutionError) as exc_info:
                wait(handle)
        assert exc_info.value.status.raised
        assert "raised an exception" in str(exc_info.value)


class TestSpawn:
    """Test spawning without waiting."""

    def test_spawn_and_wait(self):
        handle = spawn("true")
        outcome = handle.wait()
        assert outcome.ok
        assert handle.wait() is outcome
        assert handle.poll() is outcome

    def test_spawned_callable_status(self):
        assert wait(spawn(lambda: True)) is True
        handle = spawn(lambda: False)
        assert wait(handle) is False
        assert handle.outcome.returncode == 1

    def test_spawned_callable_sys_exit(self):
        handle = spawn(lambda: sys.exit(3))
        assert handle.wait().exit_code == 3

    def test_sys_exit_message_goes_to_stderr(self):
        output, ok = out_err_s(lambda: wait(spawn(lambda: sys.exit("bad input"))))
        assert output == "bad input\n"
        assert ok is False

    def test_close_option_releases_inherited_ends(self):
        read_fd, write_fd = os.pipe()
        hold_read_fd, hold_write_fd = os.pipe()
        with open(read_fd) as reader, open(write_fd, "w") as writer, \
                open(hold_read_fd) as hold_reader, open(hold_write_fd, "w") as hold_writer:
            # The child blocks on its stdin until hold_writer is closed.
            handle = spawn(
                lambda: sys.stdin.read() == "",
                stdin=hold_reader,
                close=[writer, hold_writer],
            )
            hold_reader.close()
            writer.close()
            assert reader.read() == ""
            hold_writer.close()
            assert handle.wait().ok

    def test_callable_is_isolated(self):
        state = []
        depth = len(REDIRECTIONS)

        def mutate():
            state.append(1)
            os.environ["SHELL_GLUE_CHILD"] = "1"
            REDIRECTIONS.push(1, 1)
            return True

        assert wait(spawn(mutate)) is True
        assert state == []
        assert "SHELL_GLUE_CHILD" not in os.environ
        assert len(REDIRECTIONS) == depth

    def test_detach_reaps(self):
        handle = spawn("true")
        handle.detach()
        handle.join(5)
        assert handle.outcome is not None
        assert handle.outcome.ok

    def test_kill(self):
        handle = spawn("sleep", "10")
        handle.kill()
        outcome = handle.wait()
        assert outcome.signal == signal.SIGKILL
        assert outcome.reason == "killed by SIGKILL"

    def test_kill_callable(self):
        import time

        handle = spawn(lambda: time.sleep(10))
        handle.terminate()
        assert handle.wait().signal == signal.SIGTERM


class TestPopen:
    """Test popen."""

    def test_stdin_and_stdout(self):
        with popen("cat", stdin=True, stdout=True) as p:
            p.stdin.write("hello\n")
            p.stdin.close()
            assert p.read() == "hello\n"
            assert p.wait().ok

    def test_iter_lines(self):
        with popen("printf", "a\\nb\\nc", stdout=True) as p:
            assert list(p.iter_lines()) == ["a", "b", "c"]
            assert p.check() is True

    def test_stderr_into_stdout(self):
        with popen("sh", "-c", "echo err >&2", stdout=True, stderr="stdout") as p:
            assert p.read() == "err\n"

    def test_separate_stderr(self):
        with popen("sh", "-c", "echo out; echo err >&2", stdout=True, stderr=True) as p:
            assert p.stderr.read() == "err\n"
            assert p.stdout.read() == "out\n"

    def test_callable(self):
        with popen(lambda: print("from child") or True, stdout=True) as p:
            assert list(p.iter_lines()) == ["from child"]
            assert p.wait().ok

    def test_callable_reads_stdin(self):
        with popen(lambda: sys.stdout.write(sys.stdin.read().upper()), stdin=True, stdout=True) as p:
            p.stdin.write("abc")
            p.stdin.close()
            assert p.read() == "ABC"

    def test_stderr_stdout_requires_stdout(self):
        with pytest.raises(ValueError):
            popen("true", stderr="stdout")

    def test_close_detaches(self):
        p = popen("sh", "-c", "exit 0", stdout=True)
        p.close()
        p.handle.join(5)
        assert p.outcome.ok


class TestCommandParsing:
    """Test command line normalization."""

    def test_program_with_options(self):
        command = parse_command(["tr", "ab", "AB", {1: 5, "close_others": False}])
        assert command == ExternalCommand(("tr", "ab", "AB"), SpawnOptions(stdout=5, close_others=False))

    def test_program_name(self):
        assert parse_command("cat").argv == ("cat",)

    def test_callable_forms(self):
        def func():
            return 1

        assert parse_command(func) == FunctionCommand(func)
        assert parse_command([func]).func is func
        assert parse_command([func, {0: 3}]).options.stdin == 3

    def test_path_arguments(self, tmp_path):
        assert parse_command(["ls", tmp_path]).argv == ("ls", str(tmp_path))

    def test_extra_descriptors(self):
        assert parse_command(["cmd", {3: 3}]).options.fds == {3: 3}

    def test_unknown_option(self):
        with pytest.raises(TypeError):
            parse_command(["ls", {"bogus": 1}])

    def test_empty(self):
        with pytest.raises(ValueError):
            parse_command([])
        with pytest.raises(ValueError):
            parse_command([{1: 2}])

    def test_bad_argument(self):
        with pytest.raises(TypeError):
            parse_command(["echo", 1])

    def test_describe(self):
        def func():
            pass

        assert describe(parse_command(["echo", "a b"])) == "echo 'a b'"
        assert describe(func).endswith("func()")
        assert describe((parse_command("ls"), parse_command("wc"))) == "ls | wc"


class TestSequences:
    """Test run_seq, run_or and run_and."""

    def test_run_seq_returns_last(self):
        assert run_seq(["false"], lambda: 5) == 5
        assert run_seq() is True

    def test_run_or(self):
        assert run_or(["false"], lambda: None, lambda: "ok", ["no-such"]) == "ok"
        assert run_or(["false"], ["false"]) is False
        assert run_or() is False

    def test_run_or_ignores_head_failures(self):
        with raise_on_command_error():
            assert run_or(["false"], ["true"]) is True
            with pytest.raises(CommandError):
                run_or(["false"], ["false"])

    def test_run_and(self):
        calls = []
        assert run_and(["true"], lambda: calls.append(1), lambda: calls.append(2)) is None
        assert calls == [1]
        assert run_and(["true"], lambda: "last") == "last"
        assert run_and() is True


class TestHelpers:
    """Test environment, directory and filter helpers."""

    def test_change_env(self, monkeypatch):
        monkeypatch.setenv("SHELL_GLUE_REMOVE", "x")
        monkeypatch.delenv("SHELL_GLUE_ADD", raising=False)
        with change_env(SHELL_GLUE_ADD="1", SHELL_GLUE_REMOVE=None):
            assert os.environ["SHELL_GLUE_ADD"] == "1"
            assert "SHELL_GLUE_REMOVE" not in os.environ
            assert out_ss("sh", "-c", "echo $SHELL_GLUE_ADD") == ("1", True)
        assert "SHELL_GLUE_ADD" not in os.environ
        assert os.environ["SHELL_GLUE_REMOVE"] == "x"

    def test_chdir(self, tmp_path):
        before = os.getcwd()
        with chdir(tmp_path):
            assert os.path.realpath(out_ss("pwd")[0]) == os.path.realpath(tmp_path)
        assert os.getcwd() == before

    def test_filter_line_drops_empty_results(self):
        result = io_s("keep\ndrop\nkeep too\n", lambda: filter_line(lambda l: l if "keep" in l else None))
        assert result == ("keep\nkeep too\n", True)

    def test_filter_char(self):
        assert io_s("abc", lambda: filter_char(lambda ch: ch.upper())) == ("ABC", True)


class TestCmd:
    """Test the fluent command objects."""

    def test_pipe_operator(self):
        assert (cmd("echo", "-n", "abc") | cmd("tr", "ab", "AB")).out_s() == ("ABc", True)

    def test_pipe_into_callable(self):
        assert (cmd("printf", "a\\nb\\n") | (lambda: len(sys.stdin.readlines()))).run() == 2

    def test_callable_into_program(self):
        pipeline = (lambda: sys.stdout.write("xyz")) | cmd("tr", "x", "X")
        assert pipeline.out_s() == ("Xyz", True)

    def test_with_input(self):
        assert cmd("tr", "a", "A").with_input("aaa").out_s() == ("AAA", True)

    def test_with_env_and_cwd(self, tmp_path):
        c = cmd("sh", "-c", "echo $SHELL_GLUE_V; pwd").with_env(SHELL_GLUE_V="v").with_cwd(str(tmp_path))
        lines, ok = c.out_lines()
        assert ok
        assert lines[0] == "v\n"
        assert os.path.realpath(lines[1].strip()) == os.path.realpath(tmp_path)

    def test_stream(self):
        with (cmd("printf", "b\\na\\n") | cmd("sort")).stream() as p:
            assert list(p.iter_lines()) == ["a", "b"]

    def test_repr(self):
        assert repr(cmd("ls", "-la")) == "Cmd(ls -la)"
        assert repr(cmd("ls") | cmd("wc")) == "Pipeline(ls | wc)"

    def test_isinstance(self):
        assert isinstance(cmd("ls"), Cmd)

    async def test_run_async(self):
        assert await cmd("true").run_async() is True
        assert await (cmd("echo", "x") | cmd("false")).run_async() is False

    async def test_module_run_async(self):
        assert await run_async("false") is False


class TestVersion:
    """Test version attribute."""

    def test_version_format(self):
        from shell_glue import __version__
        parts = __version__.split(".")
        assert len(parts) >= 2
        assert all(p.isdigit() for p in parts)
