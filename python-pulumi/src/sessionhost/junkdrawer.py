from __future__ import annotations

import hashlib
import secrets

import click


def print_levels(levels: list[list[str]]):
    for depth, level in enumerate(levels):
        click.secho(f"level {depth}", fg="white", bold=True)
        click.secho("∙ " + ("\n∙ ".join(level)) + "\n", fg="white")


def bucket_suffix(length: int = 4) -> str:
    # bucket names are global and lower case only
    return secrets.token_hex(length)


def text_signature(s: str) -> str:
    return hashlib.sha256(s.encode(), usedforsecurity=False).hexdigest()[:16]
