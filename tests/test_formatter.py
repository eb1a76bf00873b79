from devrig.cli.formatter import OutputFormatter
from devrig.runtime.contracts import CompilationRun
from devrig.utils.diagnostics import DevrigDiagnostic


def _diag(**overrides) -> DevrigDiagnostic:
    data = {"file_path": "src/views.py", "error_code": "ERR_SYNTAX", "message": "invalid syntax", "line_number": 3}
    data.update(overrides)
    return DevrigDiagnostic(**data)


def test_diagnostic_str_includes_location():
    assert str(_diag()) == "[ERR_SYNTAX] invalid syntax (at src/views.py:3)"
    assert str(_diag(line_number=None)) == "[ERR_SYNTAX] invalid syntax (at src/views.py)"


def test_compile_finished_success_line(capsys):
    run = CompilationRun(target="client")
    run.succeed("abc", {}, {})

    OutputFormatter.compile_finished(run)

    err = capsys.readouterr().err
    assert "Finished 'client' compilation after" in err
    assert " ms" in err


def test_compile_failure_prints_diagnostics_table(capsys):
    run = CompilationRun(target="server")
    run.fail([_diag()])

    OutputFormatter.compile_finished(run)

    err = capsys.readouterr().err
    assert "Failed to compile 'server'" in err
    assert "ERR_SYNTAX" in err
    assert "src/views.py:3" in err


def test_hmr_messages_are_prefixed_and_escaped(capsys):
    OutputFormatter.hmr("Cannot apply update. [bold]not markup[/bold]")

    err = capsys.readouterr().err
    assert "[HMR]" in err
    assert "[bold]not markup[/bold]" in err


def test_print_diagnostics_ignores_empty_list(capsys):
    OutputFormatter.print_diagnostics([])
    assert capsys.readouterr().err == ""
