import logging
import sys

import typer

from kbootstrap.commands import bootstrap

app = typer.Typer(help="Bootstrap HA Kubernetes clusters with k3s or kubeadm.")


def setup_logging(debug_mode: bool = False):
    """Quieten noisy libraries unless debugging."""
    if not debug_mode:
        logging.getLogger('paramiko').setLevel(logging.WARNING)


app.command("create")(bootstrap.create)
app.command("resume")(bootstrap.resume)
app.command("status")(bootstrap.status)


# Global options callback
@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """kbootstrap - HA Kubernetes bootstrap CLI."""
    ctx.obj = {"debug": debug}
    setup_logging(debug)
    if debug:
        logging.getLogger("kbootstrap").setLevel(logging.DEBUG)


def run():
    try:
        app()
    except Exception as e:
        logging.getLogger("kbootstrap").error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
