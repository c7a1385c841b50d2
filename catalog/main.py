"""
catalog-sync command line.

Usage:
    python -m catalog.main [--config config.json] list [--page N] [--page-size N] [--kind K] [--zone Z]
                                                       [--min-price P] [--max-price P]
    python -m catalog.main [--config config.json] watch [--page N]
    python -m catalog.main [--config config.json] migrate-images [--dry-run] [--limit N]

Property of Uncompromising Sensors LLC.
"""

import asyncio
import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog.client import CatalogClient, StaticSessionProvider
from catalog.config import loadConfig
from catalog.core.errors import ValidationError
from catalog.core.filters import ListingFilter
from catalog.core.viewSynchronizer import LoadingState, ViewState
from catalog.tools.migrateImages import ImageMigration
from sdk.logging import getLogger, configureLogging, installSessionContextFilter


def buildFilter(args) -> ListingFilter:
    return ListingFilter(kind=args.kind, zone=args.zone, minPrice=args.min_price, maxPrice=args.max_price)


def formatState(state: ViewState) -> str:
    lines = [f"page {state.currentPage}/{max(state.pageCount, 1)} ({state.totalCount} records)"]
    for record in state.items:
        lines.append(f"  #{record.id:<6} {record.kind.value:<7} {record.price:>12,.0f}  {record.zone:<16} {record.title}")
    return '\n'.join(lines)


async def runList(client: CatalogClient, args) -> int:
    view = client.createView(pageSize=args.page_size, listingFilter=buildFilter(args))
    await view.mount(args.page)
    await view.waitIdle()
    await view.unmount()

    if view.state.loadingState == LoadingState.ERROR:
        print(f"error: {view.state.error}", file=sys.stderr)
        return 1
    print(formatState(view.state))
    return 0


async def runWatch(client: CatalogClient, args) -> int:
    log = getLogger()
    view = client.createView(pageSize=args.page_size, listingFilter=buildFilter(args))

    def render(state: ViewState):
        if state.loadingState == LoadingState.IDLE:
            print(formatState(state), flush=True)
        elif state.loadingState == LoadingState.ERROR:
            print(f"error: {state.error} (retrying in {args.retry_after}s)", file=sys.stderr, flush=True)

    view.addListener(render)
    await view.mount(args.page)
    try:
        while True:
            await asyncio.sleep(args.retry_after)
            view.retry()
    except asyncio.CancelledError:
        log.info("Watch cancelled")
    finally:
        await view.unmount()
        await view.waitIdle()
    return 0


async def runMigrateImages(client: CatalogClient, args) -> int:
    storageConfig = client.config['storage']
    migration = ImageMigration(client.executor, client.storage, prefix=storageConfig['prefix'],
                               cacheControl=str(storageConfig['cacheControl']), dryRun=args.dry_run, limit=args.limit)
    report = await migration.run()
    for recordId, message in report.failures:
        print(f"[error] {recordId}: {message}", file=sys.stderr)
    print(report.summary())
    return 1 if report.failures else 0


COMMANDS = {
    'list': runList,
    'watch': runWatch,
    'migrate-images': runMigrateImages,
}


def addFilterArguments(parser: argparse.ArgumentParser):
    parser.add_argument('--kind', default=None, help='sale or rental')
    parser.add_argument('--zone', default=None)
    parser.add_argument('--min-price', type=float, default=None)
    parser.add_argument('--max-price', type=float, default=None)


def buildParser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='catalog-sync - catalog view and maintenance')
    parser.add_argument('--config', default=None, help='Path to config file (defaults + environment when omitted)')
    parser.add_argument('--identity', default=None, help='Authenticated identity for write operations')
    subparsers = parser.add_subparsers(dest='command', required=True)

    listParser = subparsers.add_parser('list', help='Print one page of records')
    listParser.add_argument('--page', type=int, default=1)
    listParser.add_argument('--page-size', type=int, default=None)
    addFilterArguments(listParser)

    watchParser = subparsers.add_parser('watch', help='Print the page again whenever the collection changes')
    watchParser.add_argument('--page', type=int, default=1)
    watchParser.add_argument('--page-size', type=int, default=None)
    watchParser.add_argument('--retry-after', type=float, default=30.0, help='Seconds between retries after an error')
    addFilterArguments(watchParser)

    migrateParser = subparsers.add_parser('migrate-images', help='Move inline data:image images to object storage')
    migrateParser.add_argument('--dry-run', action='store_true')
    migrateParser.add_argument('--limit', type=int, default=500)

    return parser


def main(argv=None) -> int:
    args = buildParser().parse_args(argv)

    configureLogging()
    log = getLogger()
    config, usedDefaults = loadConfig(args.config, log)
    loggingConfig = config['logging']
    configureLogging(logDir=loggingConfig.get('logDir'), level=loggingConfig.get('level', 'INFO'),
                     console=bool(loggingConfig.get('console', True)),
                     fileFormat=loggingConfig.get('fileFormat', 'text'))
    installSessionContextFilter()
    log.info("catalog-sync starting", command=args.command, defaults=usedDefaults)

    async def run() -> int:
        client = await CatalogClient.fromConfig(config, StaticSessionProvider(args.identity))
        try:
            return await COMMANDS[args.command](client, args)
        finally:
            await client.close()

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        log.info("Shutdown signal received")
        return 130
    except ValidationError as e:
        log.error("Invalid arguments", fields=e.fields)
        print(f"error: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        log.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
