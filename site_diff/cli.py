# === FILE: site_diff/cli.py ===
#!/usr/bin/env python3
"""
Точка входа для запуска SiteDiff через командную строку.

Команды:
  compare           Продакшен против превью для всех URL из sitemap
  compare-url       Сравнить две страницы
  compare-branches  Сравнить страницу (или sitemap) между двумя git-ветками
  screenshots       Снять скриншоты всех страниц sitemap
  config            Показать текущую конфигурацию

Общие опции:
  --config PATH       Путь к YAML/JSON-конфигу (default: configs/default.yaml)
  --log-level LEVEL   Уровень логирования (DEBUG, INFO, ...)
  --log-file PATH     Файл для логов (stdout, если не указан)
  --log-format FORMAT Формат логирования

Дополнительно:
  --version, -v       Показать версию SiteDiff

Пример:
  site-diff compare https://example.com/sitemap.xml deploy-preview-1--example.netlify.app --max-urls 50
"""
import json
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from site_diff import __version__
from site_diff.config import DEFAULT_CONFIG_PATH, DiffConfig, load_config
from site_diff.engine import compare_branches, compare_sitemap, compare_urls, run_flow, take_screenshots
from site_diff.errors import RunAbortedError
from site_diff.logger import configure

CONTEXT_SETTINGS = dict(help_option_names=["--help", "-h"])


def print_error(message: str):
    click.secho(message, fg='red', err=True)
    sys.exit(1)


def run_options(func):
    """Опции, общие для всех сценариев запуска (раздел конфигурации)."""
    options = [
        click.option('--run-name', default=None, help='Метка для имени каталога запуска'),
        click.option('--output-dir', type=click.Path(file_okay=False, path_type=Path), default=None,
                     help='Каталог для результатов'),
        click.option('--timeout', type=float, default=None, help='Таймаут запроса (секунд)'),
        click.option('--retries', type=click.IntRange(min=0), default=None, help='Число повторных попыток'),
        click.option('--retry-delay', type=float, default=None, help='Базовая задержка повтора (секунд)'),
        click.option('--token', envvar='SITE_DIFF_API_TOKEN', default=None, help='Токен сервиса скриншотов'),
        click.option('--endpoint', default=None, help='Адрес сервиса скриншотов'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def pool_options(func):
    options = [
        click.option('--max-urls', type=click.IntRange(min=1), default=None, help='Обработать не более N URL'),
        click.option('--concurrency', type=click.IntRange(min=1), default=None, help='Параллельные захваты'),
        click.option('--comparison-concurrency', type=click.IntRange(min=1), default=None,
                     help='Параллельные сравнения'),
        click.option('--file-io-concurrency', type=click.IntRange(min=1), default=None,
                     help='Параллельные операции с файлами'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _effective_config(ctx, **overrides) -> DiffConfig:
    cfg: DiffConfig = ctx.obj['config']
    mapping = {
        'run_name': overrides.pop('run_name', None),
        'output_dir': overrides.pop('output_dir', None),
        'timeout': overrides.pop('timeout', None),
        'retries': overrides.pop('retries', None),
        'retry_base_delay': overrides.pop('retry_delay', None),
        'capture_token': overrides.pop('token', None),
        'capture_endpoint': overrides.pop('endpoint', None),
        'max_urls': overrides.pop('max_urls', None),
        'capture_concurrency': overrides.pop('concurrency', None),
        'compare_concurrency': overrides.pop('comparison_concurrency', None),
        'file_io_concurrency': overrides.pop('file_io_concurrency', None),
        'cache_ttl': overrides.pop('cache_ttl', None),
        'cache_cleanup_age': overrides.pop('cache_cleanup_age', None),
    }
    mapping.update(overrides)
    try:
        return cfg.with_overrides(**mapping)
    except ValidationError as e:
        print_error(f'Ошибка в параметрах запуска: {e}')


def _execute(flow):
    try:
        summary = run_flow(flow)
    except RunAbortedError as e:
        print_error(f'Запуск прерван: {e}')
    except Exception as e:
        print_error(f'Ошибка при выполнении: {e}')
    click.echo(
        f'Processed: {summary.processed}, with changes: {summary.with_changes}, '
        f'failed: {summary.failed}, skipped: {summary.skipped}'
    )
    if summary.run_dir:
        click.echo(f'Results: {summary.run_dir}')
    return summary


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, '--version', '-v', message='SiteDiff, version %(version)s')
@click.option(
    '--config', '-c', 'config_path',
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='Путь к файлу конфигурации YAML/JSON (default: configs/default.yaml, если есть).'
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
    help='Путь к файлу логов (stdout, если не указан)'
)
@click.option(
    '--log-format', 'log_format',
    default='%(asctime)s %(levelname)s %(message)s',
    show_default=True,
    help='Строка формата для логов'
)
@click.pass_context
def cli(ctx, config_path, log_level, log_file, log_format):
    """Группа команд SiteDiff CLI."""
    configure(
        level=log_level,
        log_file=str(log_file) if log_file else None,
        log_format=log_format
    )
    try:
        if config_path is None and not DEFAULT_CONFIG_PATH.is_file():
            cfg = DiffConfig()
        else:
            cfg = load_config(config_path)
    except Exception as e:
        print_error(f'Ошибка загрузки конфигурации: {e}')
    ctx.ensure_object(dict)
    ctx.obj['config'] = cfg


@cli.command('compare', context_settings=CONTEXT_SETTINGS)
@click.argument('sitemap_url')
@click.argument('preview_domain', required=False)
@run_options
@pool_options
@click.option('--cache-ttl', type=float, default=None, help='Срок свежести кэша (секунд)')
@click.option('--cache-cleanup-age', type=float, default=None, help='Возраст удаления из кэша (секунд)')
@click.option('--no-cache', is_flag=True, help='Не использовать кэш baseline-скриншотов')
@click.pass_context
def compare(ctx, sitemap_url, preview_domain, no_cache, **options):
    """Сравнить продакшен (sitemap) с превью-доменом."""
    overrides = dict(options, sitemap_url=sitemap_url, preview_domain=preview_domain)
    if no_cache:
        overrides['cache_enabled'] = False
    cfg = _effective_config(ctx, **overrides)
    click.echo(f'Comparing {cfg.sitemap_url} against {cfg.preview_domain or "the same origin"}')
    _execute(lambda cancel: compare_sitemap(cfg, cancel))


@cli.command('compare-url', context_settings=CONTEXT_SETTINGS)
@click.argument('url1')
@click.argument('url2')
@run_options
@click.pass_context
def compare_url(ctx, url1, url2, **options):
    """Сравнить две страницы."""
    cfg = _effective_config(ctx, **options)
    _execute(lambda cancel: compare_urls(cfg, url1, url2, cancel))


@cli.command('compare-branches', context_settings=CONTEXT_SETTINGS)
@click.argument('url')
@click.argument('branch')
@run_options
@pool_options
@click.option('--base-branch', default=None, help='Ветка с эталонными скриншотами')
@click.pass_context
def compare_branches_cmd(ctx, url, branch, **options):
    """Сравнить страницу (или все страницы sitemap) между базовой веткой и BRANCH."""
    cfg = _effective_config(ctx, **options)
    _execute(lambda cancel: compare_branches(cfg, url, branch, cancel))


@cli.command('screenshots', context_settings=CONTEXT_SETTINGS)
@click.argument('sitemap_url')
@run_options
@pool_options
@click.pass_context
def screenshots(ctx, sitemap_url, **options):
    """Снять скриншоты всех страниц sitemap."""
    cfg = _effective_config(ctx, sitemap_url=sitemap_url, **options)
    _execute(lambda cancel: take_screenshots(cfg, cancel))


@cli.command('config', context_settings=CONTEXT_SETTINGS)
@click.pass_context
def show_config(ctx):
    """Показать текущую конфигурацию в JSON."""
    cfg = ctx.obj['config']
    click.echo(json.dumps(cfg.model_dump(mode='json', exclude={'capture_token'}), indent=2, ensure_ascii=False))


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
