"""
Main CLI application for huddle.

Provides commands for managing the configuration file and inspecting
persisted sessions.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import yaml

from huddle.errors import HuddleError
from huddle.lib.config import ConfigurationError, ConfigurationManager, HuddleConfig, get_config, initialize_config
from huddle.lib.logging_config import setup_logging
from huddle.lib.observability import initialize_telemetry, shutdown_telemetry
from huddle.services.session_store import FileSessionStore


logger = logging.getLogger("huddle.cli")

OUTPUT_FORMATS = click.Choice(['json', 'yaml', 'text'])


def _emit(result: Dict[str, Any], output_format: str) -> bool:
    """Print ``result`` as json or yaml. Returns False for text output."""
    if output_format == 'json':
        click.echo(json.dumps(result, indent=2, default=str))
        return True
    if output_format == 'yaml':
        click.echo(yaml.safe_dump(json.loads(json.dumps(result, default=str)), default_flow_style=False, indent=2))
        return True
    return False


def _setup_runtime(ctx: click.Context, config: HuddleConfig) -> None:
    """Configure logging and telemetry from the loaded configuration."""
    setup_logging(config.logging.model_dump())
    if config.observability.enabled:
        initialize_telemetry(config.observability.model_dump())
        ctx.call_on_close(shutdown_telemetry)


def _storage_directory(ctx: click.Context, storage_dir: Optional[str]) -> str:
    if storage_dir:
        return storage_dir
    initialize_config(ctx.obj.get('config_path'))
    config = get_config()
    _setup_runtime(ctx, config)
    return config.team.persistence.directory


# CLI Commands

@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """huddle conversation scheduler CLI."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug

    if debug:
        logging.basicConfig(level=logging.DEBUG)


# Configuration Commands

@cli.group('config')
@click.pass_context
def config_group(ctx):
    """Configuration file commands."""
    pass


@config_group.command('init')
@click.option('--path', '-p', type=click.Path(), help='Where to write the configuration file')
@click.option('--force', is_flag=True, help='Overwrite an existing file')
@click.pass_context
def config_init(ctx, path, force):
    """Write a starter configuration file."""
    manager = ConfigurationManager(path or ctx.obj.get('config_path'))
    config_file = Path(manager.config_path).expanduser()

    if config_file.exists() and not force:
        click.echo(f"Configuration already exists: {config_file} (use --force to overwrite)", err=True)
        sys.exit(1)

    try:
        manager.write_default_config(config_file)
        click.echo(f"Configuration written to: {config_file}")
    except OSError as e:
        click.echo(f"Error writing configuration: {e}", err=True)
        sys.exit(1)


@config_group.command('validate')
@click.pass_context
def config_validate(ctx):
    """Validate the huddle configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config = config_manager.get_config()
        warnings = config_manager.validate_config()
        team = config.team

        click.echo("Configuration validation completed successfully!")
        click.echo(f"Configuration file: {config.config_file_path}")
        click.echo(f"Team: {team.team_id}")
        click.echo(f"Conversation mode: {team.conversation_mode.value}")
        click.echo(f"Agents configured: {len(team.agents)}")
        click.echo(f"Permission mode: {team.tool_approval.permission_mode.value}")

        if warnings:
            click.echo("\nWarnings:")
            for warning in warnings:
                click.echo(f"  - {warning}")
        else:
            click.echo("\nNo warnings found.")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


# Session Inspection Commands

@cli.group()
@click.pass_context
def sessions(ctx):
    """Persisted session commands."""
    pass


async def _list_sessions_impl(storage_dir: str, limit: int) -> Dict[str, Any]:
    store = FileSessionStore(storage_dir)
    await store.initialize()
    try:
        found = await store.list_sessions()
        return {"storage": storage_dir, "total": len(found), "sessions": found[:limit]}
    finally:
        await store.shutdown()


@sessions.command('list')
@click.option('--storage-dir', '-s', type=click.Path(), help='Session storage directory')
@click.option('--limit', '-l', default=20, type=int, help='Maximum number of sessions to show')
@click.option('--output-format', '-f', type=OUTPUT_FORMATS, default='text', help='Output format')
@click.pass_context
def list_sessions(ctx, storage_dir, limit, output_format):
    """List persisted sessions, most recently updated first."""
    try:
        result = asyncio.run(_list_sessions_impl(_storage_directory(ctx, storage_dir), limit))

        if _emit(result, output_format):
            return

        click.echo(f"Found {result['total']} sessions:")
        click.echo()
        for session in result['sessions']:
            click.echo(f"{session['session_id'][:8]}... - {session['mode']}")
            click.echo(f"   Team: {session.get('team_id') or 'N/A'}")
            click.echo(f"   Participants: {', '.join(session['participants'])}")
            click.echo(f"   Messages: {session['message_count']}, Rounds: {session['rounds']}")
            click.echo(f"   Updated: {session['updated_at']}")
            click.echo()

    except (ConfigurationError, HuddleError) as e:
        click.echo(f"Error listing sessions: {e}", err=True)
        sys.exit(1)


async def _show_session_impl(storage_dir: str, session_id: str, limit: Optional[int]) -> Dict[str, Any]:
    store = FileSessionStore(storage_dir)
    await store.initialize()
    try:
        resolved = await store.resolve_session_id(session_id)
        session = await store.load(resolved)
        messages = await store.get_messages(resolved)
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []

        return {
            "session_id": session.id,
            "team_id": session.team_id,
            "mode": session.mode.value,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "participants": [
                {"id": p.id, "name": p.name, "role": p.role, "provider": p.provider.provider}
                for p in session.participants
            ],
            "message_count": session.message_count,
            "routing_state": session.routing_state.model_dump(mode="json"),
            "budget": {
                "session_tokens": session.budget.session_tokens,
                "agent_tokens": dict(session.budget.agent_tokens)
            },
            "pending_approvals": [r.id for r in session.pending_approvals if r.is_pending],
            "pending_plan": session.pending_plan.plan.id if session.pending_plan else None,
            "messages": [m.model_dump(mode="json", exclude={"payload"}) for m in messages]
        }
    finally:
        await store.shutdown()


@sessions.command('show')
@click.argument('session_id')
@click.option('--storage-dir', '-s', type=click.Path(), help='Session storage directory')
@click.option('--messages/--no-messages', 'show_messages', default=True, help='Include message history')
@click.option('--limit', '-l', type=int, help='Show only the last N messages')
@click.option('--output-format', '-f', type=OUTPUT_FORMATS, default='text', help='Output format')
@click.pass_context
def show_session(ctx, session_id, storage_dir, show_messages, limit, output_format):
    """Show a persisted session. SESSION_ID may be a unique prefix."""
    try:
        result = asyncio.run(_show_session_impl(_storage_directory(ctx, storage_dir), session_id, limit))
        if not show_messages:
            result.pop("messages")

        if _emit(result, output_format):
            return

        click.echo(f"Session ID: {result['session_id']}")
        click.echo(f"Team: {result['team_id'] or 'N/A'}")
        click.echo(f"Mode: {result['mode']}")
        click.echo(f"Participants: {', '.join(p['id'] for p in result['participants'])}")
        click.echo(f"Messages: {result['message_count']}")
        click.echo(f"Round: {result['routing_state']['round_counter']}")
        click.echo(f"Session tokens: {result['budget']['session_tokens']}")
        if result['pending_approvals']:
            click.echo(f"Pending approvals: {', '.join(result['pending_approvals'])}")
        if result['pending_plan']:
            click.echo(f"Pending plan: {result['pending_plan']}")
        click.echo(f"Created: {result['created_at']}")
        click.echo(f"Updated: {result['updated_at']}")

        if show_messages:
            click.echo("\nConversation History:")
            click.echo("=" * 50)
            for message in result['messages']:
                content = message['content']
                marker = f" [{message['status']}]" if message['status'] == 'error' else ""
                click.echo(f"{message['author']}{marker}: {content[:100]}{'...' if len(content) > 100 else ''}")
                if message.get('error'):
                    click.echo(f"  Error: {message['error']}")

    except HuddleError as e:
        click.echo(f"Error showing session: {e}", err=True)
        sys.exit(1)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


async def _list_checkpoints_impl(storage_dir: str, session_id: str) -> Dict[str, Any]:
    store = FileSessionStore(storage_dir)
    await store.initialize()
    try:
        resolved = await store.resolve_session_id(session_id)
        checkpoints = []
        for index in await store.list_checkpoints(resolved):
            checkpoint = await store.load_checkpoint(resolved, index)
            if checkpoint is None:
                continue
            checkpoints.append({
                "message_index": checkpoint.message_index,
                "created_at": checkpoint.created_at.isoformat(),
                "history_messages": len(checkpoint.history),
                "summarized": checkpoint.summarized,
                "summarized_count": checkpoint.summarized_count
            })
        return {"session_id": resolved, "checkpoints": checkpoints}
    finally:
        await store.shutdown()


@sessions.command('checkpoints')
@click.argument('session_id')
@click.option('--storage-dir', '-s', type=click.Path(), help='Session storage directory')
@click.option('--output-format', '-f', type=OUTPUT_FORMATS, default='text', help='Output format')
@click.pass_context
def list_checkpoints(ctx, session_id, storage_dir, output_format):
    """List the checkpoints stored for a session."""
    try:
        result = asyncio.run(_list_checkpoints_impl(_storage_directory(ctx, storage_dir), session_id))

        if _emit(result, output_format):
            return

        click.echo(f"Checkpoints for {result['session_id']}: {len(result['checkpoints'])}")
        for checkpoint in result['checkpoints']:
            mode = "summary" if checkpoint['summarized'] else "full"
            click.echo(
                f"  @{checkpoint['message_index']}: {checkpoint['history_messages']} messages ({mode}), "
                f"created {checkpoint['created_at']}"
            )

    except (ConfigurationError, HuddleError) as e:
        click.echo(f"Error listing checkpoints: {e}", err=True)
        sys.exit(1)


if __name__ == '__main__':
    cli()
