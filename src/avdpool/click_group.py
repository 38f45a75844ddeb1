"""Custom Click group that shows help on usage errors.

A mistyped command or a missing option prints the error followed by the help
of the most specific command involved, then exits with the error's code.
"""

import sys
from typing import Any

import click

USAGE_ERRORS = (
    click.exceptions.UsageError,
    click.exceptions.BadParameter,
    click.exceptions.MissingParameter,
)


def _show_error_with_help(error: click.exceptions.UsageError, ctx: click.Context | None) -> None:
    click.echo(f"Error: {error.format_message()}", err=True)
    if ctx is not None:
        click.echo("")
        click.echo(ctx.get_help())


class AvdPoolGroup(click.Group):
    """Click group that auto-displays contextual help on usage errors."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return super().main(*args, **kwargs)
        except USAGE_ERRORS as e:
            ctx = getattr(e, "ctx", None)
            _show_error_with_help(e, ctx)
            exit_code = getattr(e, "exit_code", 1)
            if ctx is not None:
                # ctx.exit() keeps CliRunner happy
                ctx.exit(exit_code)
            sys.exit(exit_code)

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except USAGE_ERRORS as e:
            error_ctx = getattr(e, "ctx", None) or ctx
            _show_error_with_help(e, error_ctx)
            error_ctx.exit(getattr(e, "exit_code", 1))
            return None

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        """Show group help when the command name is unknown."""
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            # Parameter errors are reported by invoke()
            if isinstance(e, click.exceptions.MissingParameter | click.exceptions.BadParameter):
                raise
            _show_error_with_help(e, ctx)
            ctx.exit(1)
            return None, None, []


# Subgroups created with @cli.group() use AvdPoolGroup too
AvdPoolGroup.group_class = AvdPoolGroup
