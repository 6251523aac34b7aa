"""CLI interface for llamachat."""

import asyncio
import logging
import os
import sys

import click

from . import __version__, config


def _open_app(relay_url: str):
    from . import LlamaChat
    from .llm import Relay
    from .store import File

    return LlamaChat(llm=Relay(base_url=relay_url), store=File(str(config.DATA_DIR)))


@click.group()
@click.version_option(version=__version__, prog_name="llamachat")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def cli(verbose: bool):
    """llamachat: stream one prompt to several models side by side.

    Chats are kept in LLAMACHAT_DATA_DIR (default ~/.llamachat) and sent
    through the relay server at LLAMACHAT_RELAY_URL.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=config.PORT, show_default=True, type=int)
@click.option("--model", default=config.OPENROUTER_MODEL, show_default=True)
def serve(host: str, port: int, model: str):
    """Start the relay server (chat proxy and collaborative rooms)."""
    if not os.environ.get("OPENROUTER_API_KEY"):
        click.echo("Missing OPENROUTER_API_KEY in the environment.", err=True)
        sys.exit(1)

    import uvicorn

    from .server import create_app

    click.echo(f"Llama Chat relay on http://{host}:{port}")
    click.echo(f"Model: {model}")
    uvicorn.run(create_app(default_model=model), host=host, port=port)


@cli.command()
@click.argument("message")
@click.option("--category", default="General Chat", show_default=True)
@click.option("--model", "model_id", default=None, help="Primary model id")
@click.option(
    "--compare",
    multiple=True,
    help="Model id to run side by side (repeatable; replaces --model)",
)
@click.option("--chat", "chat_id", default=None, help="Continue an existing chat")
@click.option("--relay-url", default=config.RELAY_URL, show_default=True)
def chat(message, category, model_id, compare, chat_id, relay_url):
    """Send MESSAGE and print each model's reply."""
    from .registry import get_model_info

    app = _open_app(relay_url)
    conversations = app.conversations
    if chat_id:
        current = conversations.get_chat(chat_id)
        if current is None:
            raise click.ClickException(f"No chat with id {chat_id}")
        conversations.set_active_chat(chat_id)
        if model_id:
            conversations.choose_model(chat_id, model_id)
    else:
        current = conversations.create_chat(category, model_id)
    for compare_id in compare:
        if compare_id not in conversations.get_chat(current.id).selected_model_ids:
            conversations.toggle_compare_model(current.id, compare_id)

    before = len(conversations.get_chat(current.id).messages)
    asyncio.run(app.send(current.id, message))

    for reply in conversations.get_chat(current.id).messages[before + 1 :]:
        label = get_model_info(reply.model_used).label if reply.model_used else "Assistant"
        click.echo(click.style(f"[{label}]", bold=True))
        click.echo(reply.content)
        click.echo()
    click.echo(f"Chat: {current.id}", err=True)


@cli.command("models")
def models_cmd():
    """List the models a chat can target."""
    from .registry import DEFAULT_MODEL_ID, list_models

    for info in list_models():
        marker = "*" if info.id == DEFAULT_MODEL_ID else " "
        click.echo(
            f"{marker} {info.id:<10} {info.label:<12} speed={info.speed} "
            f"reasoning={info.reasoning} creativity={info.creativity}  -> {info.engine}"
        )


@cli.command("list")
@click.option("--search", default="", help="Match titles and message text")
@click.option("--category", default=None)
@click.option("--model", "model_id", default=None)
def list_cmd(search, category, model_id):
    """List saved chats, pinned first, most recent next."""
    app = _open_app(config.RELAY_URL)
    chats = app.conversations.list_chats(search, category=category, model_id=model_id)
    if not chats:
        click.echo("No chats found.")
        return
    for c in chats:
        pin = "📌 " if c.pinned else ""
        click.echo(
            f"{c.id}  {pin}{c.title}  [{c.category}, {c.model_id}]  "
            f"{len(c.messages)} messages, {c.updated_at:%Y-%m-%d %H:%M}"
        )


@cli.command("export")
@click.argument("chat_id")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["json", "markdown", "link"]),
    default="markdown",
    show_default=True,
)
@click.option("--base-url", default=config.RELAY_URL, help="Base URL for share links")
def export_cmd(chat_id, fmt, base_url):
    """Print a chat as JSON, Markdown or a share link."""
    from .export import build_share_url, to_json, to_markdown

    app = _open_app(config.RELAY_URL)
    current = app.conversations.get_chat(chat_id)
    if current is None:
        raise click.ClickException(f"No chat with id {chat_id}")
    if fmt == "json":
        click.echo(to_json(current))
    elif fmt == "markdown":
        click.echo(to_markdown(current))
    else:
        click.echo(build_share_url(current, base_url))


def main():
    cli()


if __name__ == "__main__":
    main()
