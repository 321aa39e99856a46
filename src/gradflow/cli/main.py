from __future__ import annotations

import numpy as np
import typer

from gradflow import __version__
from gradflow.autodiff import differentiate
from gradflow.config import EngineConfig
from gradflow.init import uniform
from gradflow.ir.graph import Graph
from gradflow.ops import registered_kinds
from gradflow.runtime.session import Session
from gradflow.utils.logger import configure_logging

app = typer.Typer(help="gradflow CLI")


@app.command()
def info() -> None:
    """Show the version and the registered operator kinds."""
    typer.echo(f"gradflow {__version__}")
    typer.echo("operators: " + ", ".join(registered_kinds()))


@app.command()
def demo(
    workers: int = typer.Option(1, min=1, help="Inter-op worker threads"),
    seed: int = typer.Option(0, help="Seed for the parameter initializers"),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """
    Build z = matmul(A, B) with A [4, 8] and B [8, 2], run it, then differentiate.
    """
    configure_logging(log_level)
    graph = Graph("demo")
    a = graph.parameter("A", (4, 8), init=uniform(-1.0, 1.0))
    b = graph.parameter("B", (8, 2), init=uniform(-1.0, 1.0))
    (z,) = graph.add_operation("MatMul", [a, b], name="z")
    graph.mark_output(z)
    typer.echo(f"z: {graph.spec(z)}")

    bindings = graph.initial_bindings(np.random.default_rng(seed))
    config = EngineConfig.from_env(num_workers=workers, log_level=log_level)
    with Session.from_config(graph, config) as session:
        out = session.run(z, bindings)
        ok = np.allclose(out, bindings[a] @ bindings[b], rtol=1e-5, atol=1e-6)
        typer.echo(f"matmul check: {'ok' if ok else 'MISMATCH'}")

        grads = differentiate(graph, [z], [a, b])
        typer.echo(session.plan([grads[a], grads[b]]).describe())
        ga, gb = session.run([grads[a], grads[b]], bindings)
        typer.echo(f"dz/dA: {list(ga.shape)}  dz/dB: {list(gb.shape)}")
    if not ok:
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
