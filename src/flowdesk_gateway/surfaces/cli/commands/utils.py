from __future__ import annotations

import importlib.metadata
from typing import NoReturn, Optional

import typer

from .... import __version__


def get_version() -> str:
    try:
        return importlib.metadata.version("flowdesk-gateway")
    except importlib.metadata.PackageNotFoundError:
        return __version__


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)
