# src/lca/observers/console.py
import typer

from .events import BaseEvent
from .interface import WARNING_EVENTS

_HIDDEN = ("ts", "run_id", "env", "context")


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in _HIDDEN)
        line = f"[{d['ts']}] {d['env']}/{d['context']} {k} {{{data}}}"
        if isinstance(event, WARNING_EVENTS):
            typer.secho(line, fg=typer.colors.YELLOW, err=True)
        else:
            typer.echo(line)
