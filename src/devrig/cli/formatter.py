from datetime import datetime
from typing import List, Optional
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from devrig.utils.diagnostics import DevrigDiagnostic

# Create a stderr console for logging
error_console = Console(stderr=True)

HMR_PREFIX = "[HMR]"

def timestamp(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now()).strftime("%H:%M:%S")

class OutputFormatter:
    """
    Handles operator output for the CLI and the dev server.
    Everything goes to stderr; stdout stays free for data.
    """

    @staticmethod
    def log(message: str, severity: str = "info", prefix: str = "[SYSTEM]") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"

        if severity == "warning":
            style = "yellow"
        elif severity == "error":
            style = "red"
        elif severity == "critical":
            style = "bold red"
        elif severity == "success":
            style = "green"

        text = escape(message)
        if prefix == HMR_PREFIX:
            error_console.print(f"[magenta]{prefix}[/magenta] [{style}]{text}[/{style}]", highlight=False)
            return

        if prefix:
            text = f"{prefix} {text}"
        error_console.print(f"[{style}]{text}[/{style}]", highlight=False)

    @staticmethod
    def hmr(message: str, severity: str = "info") -> None:
        OutputFormatter.log(message, severity=severity, prefix=HMR_PREFIX)

    @staticmethod
    def compile_started(name: str) -> None:
        OutputFormatter.log(f"[{timestamp()}] Compiling '{name}'...", prefix="")

    @staticmethod
    def compile_finished(run) -> None:
        """Report a resolved compilation run, with its errors when it failed."""
        if run.succeeded:
            OutputFormatter.log(
                f"[{timestamp()}] Finished '{run.target}' compilation after {run.duration_ms} ms",
                severity="success",
                prefix="",
            )
            return

        OutputFormatter.print_diagnostics(run.errors, title=f"Failed to compile '{run.target}'")
        OutputFormatter.log(
            f"[{timestamp()}] Failed to compile '{run.target}' after {run.duration_ms} ms",
            severity="error",
            prefix="",
        )

    @staticmethod
    def print_diagnostics(diagnostics: List[DevrigDiagnostic], title: str = "Devrig Diagnostics") -> None:
        """
        Prints a table of compile diagnostics.
        """
        if not diagnostics:
            return

        table = Table(title=title, border_style="red", header_style="bold red")
        table.add_column("Severity", style="bold")
        table.add_column("Code")
        table.add_column("Message")
        table.add_column("Location")

        for diag in diagnostics:
            color = "red"
            if diag.severity == "warning":
                color = "yellow"
            elif diag.severity == "critical":
                color = "bold red"

            loc = f"{diag.file_path}"
            if diag.line_number:
                loc += f":{diag.line_number}"

            table.add_row(
                f"[{color}]{diag.severity.upper()}[/{color}]",
                diag.error_code,
                diag.message,
                loc
            )

        error_console.print(table)
        error_console.print() # spacing
