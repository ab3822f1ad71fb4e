"""
CLI entry point for the Bitrix24 REST client.

Sub-commands: info, call, list, batch. Credentials come from .env unless
--webhook is given.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from b24_auth import OAuthAuth, OAuthParams, save_token
from b24_client import B24Client
from b24_http import MAX_BATCH_COMMANDS
from config import AppConfig, ConfigurationError, load_config, load_credentials_env
from logging_utils import ChannelLogger, mask_secret, setup_logging
from outcome import B24Error, CallOutcome, Failure

logger: logging.Logger | None = None
console = Console()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='b24-rest',
        description='Throttled, authenticated Bitrix24 REST calls',
    )
    parser.add_argument(
        '--config',
        type=Path,
        default=Path('config.toml'),
        help='Path to config.toml (default: ./config.toml)',
    )
    parser.add_argument(
        '--webhook',
        default=None,
        help='Webhook URL https://{domain}/rest/{user_id}/{secret} (overrides .env)',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('info', help='Show the configured account address (secret masked)')

    for name, help_text in (
        ('call', 'Call one REST method'),
        ('list', 'Call a *.list method and collect every page'),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument('method', help='REST method, e.g. crm.deal.list')
        cmd.add_argument(
            '-p', '--param',
            action='append',
            default=[],
            metavar='KEY=VALUE',
            help='Method parameter (repeatable)',
        )
        cmd.add_argument('--json', dest='json_params', default=None, help='Method parameters as a JSON object')
        if name == 'list':
            cmd.add_argument('--item-key', default=None, help='Key holding the items in each page (e.g. items)')

    batch = sub.add_parser('batch', help='Run commands from a JSON file {key: [method, params]}')
    batch.add_argument('file', type=Path)
    batch.add_argument('--halt', action='store_true', help='Stop at the first failing command')

    return parser.parse_args(argv)


def parse_params(pairs: list[str], json_params: str | None) -> dict:
    """Merge --json and repeated -p KEY=VALUE options into one params dict."""
    params: dict = {}
    if json_params:
        loaded = json.loads(json_params)
        if not isinstance(loaded, dict):
            raise ValueError('--json must be a JSON object')
        params.update(loaded)
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key:
            raise ValueError(f'Expected KEY=VALUE, got {pair!r}')
        params[key] = value
    return params


def build_client(config: AppConfig, webhook: str | None) -> B24Client:
    """Create a B24Client from --webhook or the credentials in .env."""
    channel_logger = ChannelLogger('b24_rest', config.logging.channels)
    kwargs = dict(
        restriction_params=config.throttle.to_params(),
        logger=channel_logger,
        timeout_seconds=config.http.timeout_seconds,
        user_agent=config.http.user_agent,
        client_side_warning=config.client.client_side_warning,
        client_side_warning_message=config.client.client_side_warning_message,
    )
    if webhook:
        return B24Client.from_webhook_url(webhook, **kwargs)

    credentials = load_credentials_env(config.project_root)
    if credentials.has_webhook:
        return B24Client.from_webhook_url(credentials.webhook_url, **kwargs)

    token_path = config.resolve_path(config.oauth.token_file)
    if token_path.exists():
        auth = OAuthAuth.from_token_file(
            token_path,
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            token_url=config.oauth.token_url,
            timeout_seconds=config.http.timeout_seconds,
        )
    else:
        auth = OAuthAuth(
            OAuthParams(
                client_id=credentials.client_id,
                client_secret=credentials.client_secret,
                refresh_token=credentials.refresh_token,
                token_url=config.oauth.token_url,
                domain=credentials.domain or '',
                timeout_seconds=config.http.timeout_seconds,
            ),
            on_refresh=lambda t: save_token(t, token_path),
        )
    return B24Client(auth, **kwargs)


def render_outcome(outcome: CallOutcome) -> None:
    if isinstance(outcome, Failure):
        console.print(Panel(str(outcome), title='[red]Failed[/]', border_style='red'))
        if outcome.raw_response:
            console.print_json(data=outcome.raw_response)
        return
    console.print_json(data=outcome.payload)
    if outcome.total is not None:
        console.print(f'[dim]total: {outcome.total}[/]')


def render_batch(outcome: CallOutcome) -> None:
    if isinstance(outcome, Failure):
        render_outcome(outcome)
        return
    table = Table(title='batch')
    table.add_column('key')
    table.add_column('status')
    table.add_column('result')
    for key, item in outcome.payload.items():
        if isinstance(item, Failure):
            table.add_row(str(key), '[red]failed[/]', str(item))
        else:
            table.add_row(str(key), '[green]ok[/]', json.dumps(item.payload, ensure_ascii=False)[:200])
    console.print(table)


def load_batch_file(path: Path) -> dict:
    raw = json.loads(path.read_text(encoding='utf-8'))
    if not isinstance(raw, dict):
        raise ValueError(f'{path} must hold a JSON object of key: [method, params]')
    if len(raw) > MAX_BATCH_COMMANDS:
        raise ValueError(f'{path} holds {len(raw)} commands, batch accepts at most {MAX_BATCH_COMMANDS}')
    calls = {}
    for key, value in raw.items():
        if isinstance(value, str):
            calls[key] = (value, {})
            continue
        if not isinstance(value, list) or len(value) != 2 or not isinstance(value[0], str):
            raise ValueError(f'Command {key!r} must be "method" or ["method", params], got {value!r}')
        method, params = value
        if params is not None and not isinstance(params, dict):
            raise ValueError(f'Params of command {key!r} must be a JSON object, got {params!r}')
        calls[key] = (method, params or {})
    return calls


async def run(args: argparse.Namespace) -> int:
    """Load config, build the client and execute one sub-command. Returns the exit code."""
    global logger

    try:
        config = load_config(args.config)
        client = build_client(config, args.webhook)
    except (ConfigurationError, B24Error, ValueError) as e:
        console.print(f'\n[red]Configuration error:[/] {e}')
        return 2

    logger = setup_logging(
        log_name='b24_rest',
        verbose_console_logging=config.logging.verbose_console_logging,
    )

    if args.command == 'info':
        console.print(f'Target origin: {client.get_target_origin() or "(resolved after token refresh)"}')
        console.print(f'REST base:     {mask_secret(client.get_target_origin_with_path())}')
        console.print(f'Throttle:      {config.throttle.amount} calls, '
                      f'drain {config.throttle.speed * 1000:g}/s, sleep {config.throttle.sleep:g}ms')
        return 0

    try:
        if args.command == 'batch':
            calls = load_batch_file(args.file)
        else:
            params = parse_params(args.param, args.json_params)
    except (ValueError, OSError) as e:
        console.print(f'[red]Invalid input:[/] {e}')
        return 2

    async with client:
        if args.command == 'call':
            outcome = await client.call(args.method, params)
            render_outcome(outcome)
        elif args.command == 'list':
            outcome = await client.call_list_method(args.method, params, args.item_key)
            render_outcome(outcome)
        else:
            outcome = await client.batch(calls, halt_on_error=args.halt)
            render_batch(outcome)

    logger.info(f'{args.command} finished: {"ok" if outcome.is_success else outcome}')
    return 0 if outcome.is_success else 1


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    sys.exit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()
