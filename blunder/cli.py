"""
blunder CLI
===========
Command-line entry point: launch the web GUI, or send a single proxied
request and render the result in the terminal.
"""

from __future__ import annotations

import json
import logging
from typing import Tuple

import click
from dotenv import load_dotenv

from blunder import __version__
from blunder.config import CONFIG_FILE, BlunderConfig, detect_platform, load_config, save_config
from blunder.core.interpret import METHODS, interpret, parse_header_lines
from blunder.core.proxy import ProxyEngine, ProxyFailure, prefer_ipv4
from blunder.ui import print_info, print_success, show_banner, show_config_status, show_response

load_dotenv()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# ── Main CLI ─────────────────────────────────────────────────────────────────

@click.group(invoke_without_command=True)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(__version__, prog_name="blunder")
@click.pass_context
def main(ctx, verbose):
    """blunder client — Minimal API client"""
    ctx.ensure_object(dict)

    config = load_config()
    if verbose:
        config.ui.verbose = True
    _setup_logging(config.ui.verbose)

    ctx.obj["config"] = config

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@main.command()
@click.option("--host", default=None, help="Host to bind the GUI server")
@click.option("--port", default=None, type=int, help="Port for the GUI server")
@click.option("--no-browser", is_flag=True, help="Do not open a browser window")
@click.pass_context
def serve(ctx, host, port, no_browser):
    """Launch the web GUI."""
    config: BlunderConfig = ctx.obj["config"]
    from blunder.gui.app import launch_gui
    launch_gui(config, host=host, port=port, open_browser=False if no_browser else None)


main.add_command(serve, name="gui")


@main.command()
@click.argument("url")
@click.option("--method", "-X", default="GET", show_default=True,
              help=f"HTTP method ({', '.join(METHODS)}; others are forwarded as-is)")
@click.option("--header", "-H", "headers", multiple=True, help="Request header, 'Key: Value'")
@click.option("--data", "-d", "body", default=None, help="Request body (ignored for GET/HEAD)")
@click.option("--json", "as_json", is_flag=True, help="Print the raw proxy result as JSON")
@click.option("--no-headers", is_flag=True, help="Hide response headers")
@click.pass_context
def send(ctx, url: str, method: str, headers: Tuple[str, ...], body, as_json: bool, no_headers: bool):
    """Send one request through the proxy pipeline."""
    config: BlunderConfig = ctx.obj["config"]
    if config.proxy.prefer_ipv4:
        prefer_ipv4()

    payload = {
        "url": url,
        "method": method,
        "headers": parse_header_lines("\n".join(headers)),
        "body": body,
    }
    engine = ProxyEngine.from_config(config.proxy)
    result = engine.handle_payload(payload)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        show_response(interpret(result.to_dict()), headers=not no_headers)

    if isinstance(result, ProxyFailure):
        ctx.exit(1)


@main.command()
@click.option("--init", "write", is_flag=True, help="Write the effective configuration to the config file")
@click.pass_context
def config(ctx, write):
    """Show current configuration."""
    cfg: BlunderConfig = ctx.obj["config"]
    if write:
        path = save_config(cfg)
        print_success(f"Configuration written to {path}")
        return

    plat = detect_platform()
    show_banner()
    show_config_status({
        "server": f"{cfg.server.host}:{cfg.server.port}",
        "open_browser": cfg.server.open_browser,
        "timeout": f"{cfg.proxy.timeout}s" if cfg.proxy.timeout else "none",
        "max_redirects": cfg.proxy.max_redirects,
        "verify_tls": cfg.proxy.verify_tls,
        "prefer_ipv4": cfg.proxy.prefer_ipv4,
        "platform": f"{plat['system']} {plat['machine']} | Python {plat['python']}",
    })
    print_info(f"Config file: {CONFIG_FILE}")


if __name__ == "__main__":
    main()
