# === FILE: site_lens/cli.py ===
"""
Точка входа для запуска сканера SiteLens через командную строку.

Команды:
  scan URL  Просканировать сайт и вывести/сохранить JSON-отчёт
  serve     Запустить HTTP API (aiohttp)
  config    Показать текущую конфигурацию

Общие опции:
  --config PATH       Путь к YAML/JSON-конфигу (default: configs/default.yaml, если есть)
  --log-level LEVEL   Уровень логирования (DEBUG, INFO, ...)
  --log-file PATH     Файл для логов (stderr, если не указан)

Команда scan опции:
  --mode MODE         single | crawl
  --max-pages INT     Макс. число страниц в режиме crawl
  --budget-ms INT     Общий бюджет времени (мс)
  --strategy NAME     mobile | desktop для сервиса оценки
  --no-screenshots    Не делать скриншоты
  --output PATH       Сохранить JSON-отчёт в файл
  --pretty            Преформатировать JSON-вывод (отступ 2)

Пример:
  site-lens scan https://example.com --mode crawl --max-pages 3 --output report.json
"""
import json
import sys
from pathlib import Path
from typing import Any, Dict

import click

from site_lens import __version__
from site_lens.config import _DEFAULT_CFG, ScannerConfig, load_config
from site_lens.engine import Engine
from site_lens.logger import init_logging
from site_lens.models import ScanReport
from site_lens.report.json_report import render_json
from site_lens.server import run_server

CONTEXT_SETTINGS = dict(help_option_names=["--help"])


def print_error(message: str):
    click.secho(message, fg='red', err=True)
    sys.exit(1)


def run_scan(cfg: ScannerConfig, payload: Dict[str, Any]) -> ScanReport:
    """Синхронный запуск полного сканирования (подменяется в тестах)."""
    return Engine(cfg).start_scan(payload)


def serve_api(cfg: ScannerConfig, host: str, port: int) -> None:
    run_server(Engine(cfg), host=host, port=port)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, '--version', '-v', message='SiteLens, version %(version)s')
@click.option(
    '--config', '-c', 'config_path',
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='Путь к файлу конфигурации YAML/JSON.'
)
@click.option(
    '--log-level', 'log_level',
    default='INFO', show_default=True,
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']),
    help='Уровень логирования'
)
@click.option(
    '--log-file', 'log_file',
    default=None,
    type=click.Path(writable=True, dir_okay=False, path_type=Path),
    help='Путь к файлу логов (stderr, если не указан)'
)
@click.pass_context
def cli(ctx, config_path, log_level, log_file):
    """Группа команд SiteLens CLI."""
    init_logging(level=log_level, log_file=str(log_file) if log_file else None)
    try:
        if config_path is None and not _DEFAULT_CFG.exists():
            cfg = ScannerConfig()
        else:
            cfg = load_config(config_path)
    except Exception as e:
        print_error(f'Ошибка загрузки конфигурации: {e}')
    ctx.ensure_object(dict)
    ctx.obj['config'] = cfg


@cli.command('scan', context_settings=CONTEXT_SETTINGS)
@click.argument('url')
@click.option(
    '--mode', '-m', 'mode',
    default='single', show_default=True,
    type=click.Choice(['single', 'crawl']),
    help='Одна страница или обход сайта'
)
@click.option('--max-pages', 'max_pages', type=int, default=None, help='Макс. число страниц (crawl)')
@click.option('--budget-ms', 'budget_ms', type=int, default=None, help='Общий бюджет времени (мс)')
@click.option(
    '--strategy', 'strategy',
    default=None,
    type=click.Choice(['mobile', 'desktop']),
    help='Стратегия сервиса оценки'
)
@click.option('--no-screenshots', 'no_screenshots', is_flag=True, help='Не делать скриншоты')
@click.option(
    '--output', '-o', 'output',
    default=None,
    type=click.Path(writable=True, dir_okay=False, path_type=Path),
    help='Сохранить JSON-отчёт в файл'
)
@click.option('--pretty', is_flag=True, help='Преформатировать JSON-вывод (отступ 2)')
@click.pass_context
def scan(ctx, url, mode, max_pages, budget_ms, strategy, no_screenshots, output, pretty):
    """Просканировать URL и вывести JSON-отчёт."""
    cfg = ctx.obj['config']
    payload: Dict[str, Any] = {
        'startUrl': url,
        'mode': mode,
        'maxPages': max_pages,
        'totalBudgetMs': budget_ms,
        'psiStrategy': strategy,
        'includeScreenshots': not no_screenshots,
    }
    click.echo(f'Starting scan: {url} ({mode})', err=True)
    try:
        report = run_scan(cfg, payload)
    except Exception as e:
        print_error(f'Ошибка при сканировании: {e}')

    if output:
        try:
            saved = render_json(report, output, pretty=pretty)
        except OSError as e:
            print_error(f'Ошибка при сохранении JSON: {e}')
        click.echo(f'JSON report: {saved}')
    else:
        click.echo(report.json(pretty=pretty))

    click.echo(f'Status: {report.status}. {report.message}', err=True)
    if report.status == 'failed':
        sys.exit(1)


@cli.command('serve', context_settings=CONTEXT_SETTINGS)
@click.option('--host', default='127.0.0.1', show_default=True, help='Адрес для HTTP API')
@click.option('--port', default=8080, show_default=True, type=int, help='Порт для HTTP API')
@click.pass_context
def serve(ctx, host, port):
    """Запустить HTTP API."""
    try:
        serve_api(ctx.obj['config'], host, port)
    except Exception as e:
        print_error(f'Ошибка запуска сервера: {e}')


@cli.command('config', context_settings=CONTEXT_SETTINGS)
@click.pass_context
def show_config(ctx):
    """Показать текущую конфигурацию в JSON (ключ API скрыт)."""
    cfg = ctx.obj['config']
    data = cfg.model_dump(mode='json')
    if data['psi'].get('api_key'):
        data['psi']['api_key'] = '***'
    if data['jobs'].get('redis_url'):
        data['jobs']['redis_url'] = '***'
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    cli()
