"""CLI handlers for config commands."""

from __future__ import annotations

import click

from klaude.config import default_config_path, init_config, load_config


@click.group("config")
def config_group():
    """Manage configuration."""
    pass


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def config_init(force: bool):
    """Create default configuration file."""
    path = default_config_path()
    if path.exists() and not force:
        click.echo(f"Configuration already exists at: {path} (use --force to overwrite)")
        return
    path = init_config(path)
    click.echo(f"Configuration created at: {path}")


@config_group.command("show")
def config_show():
    """Show current configuration."""
    config = load_config()
    click.echo(f"Config file: {config.config_path}")
    click.echo(f"  MongoDB: {config.mongodb.uri}/{config.mongodb.database}")
    click.echo(f"  Socket dir: {config.resolved_socket_dir}")
    click.echo(f"  Projects dir: {config.resolved_projects_dir}")
    click.echo(f"  Max agent depth: {config.wrapper.max_agent_depth}")
    click.echo(f"  IPC timeout: {config.wrapper.ipc_timeout_ms}ms")
    click.echo(f"  Registry lock timeout: {config.wrapper.lock_timeout_ms}ms")
    click.echo(f"  SDK model: {config.sdk.model} (permission mode {config.sdk.permission_mode})")
    click.echo(f"  GPT runtime: {config.gpt.preferred_runtime} (fallback={config.gpt.fallback_on_error})")
    click.echo(f"  Binaries: claude={config.sdk.claude_binary} codex={config.gpt.codex_binary} "
               f"cursor={config.gpt.cursor_binary} gemini={config.gemini.binary}")
    click.echo(f"  Wait timeout: {config.wait.timeout_seconds}s")


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value.

    Modifies the TOML config file. Key uses dot notation, e.g.:
    wrapper.max_agent_depth, gpt.preferred_runtime, mongodb.uri
    """
    import tomli_w

    path = default_config_path()
    if not path.exists():
        click.echo("No config file found. Run 'klaude config init' first.", err=True)
        return

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    with open(path, "rb") as f:
        data = tomllib.load(f)

    parts = key.split(".")
    target = data
    for part in parts[:-1]:
        target = target.setdefault(part, {})

    final_key = parts[-1]
    if value.lower() in ("true", "false"):
        target[final_key] = value.lower() == "true"
    elif value.isdigit():
        target[final_key] = int(value)
    else:
        target[final_key] = value

    with open(path, "wb") as f:
        tomli_w.dump(data, f)

    try:
        load_config(path)
    except ValueError as e:
        click.echo(f"Warning: {e}", err=True)
    click.echo(f"Set {key} = {value}")
