"""
CLI layer for valops.

A Typer application whose commands build a ``ServiceSpec`` once from flags
or a fleet file and delegate to ``valops.deploy.Reconciler``. All lifecycle
logic lives in the deploy package; this package only handles argument
parsing, coloured output and table formatting.

Entry point::

    valops --help
"""

from valops.cli.app import app

__all__ = ["app"]
