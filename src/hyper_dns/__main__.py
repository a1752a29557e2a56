"""Entry point for hyper-dns."""
import argparse
import asyncio
import sys
from .config import logger
from .errors import NotFQDNError, RecordNotFoundError
from .resolve import Resolver
from .sqlite_cache import SQLiteCache

__all__ = ['main']


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='hyper-dns',
        description='Resolve domain names to keys of peer-to-peer protocols.'
    )
    parser.add_argument('names', nargs='+', metavar='NAME', help='domain name or URL to resolve')
    parser.add_argument('-p', '--protocol', help='only resolve this protocol')
    parser.add_argument('--url', action='store_true', help='resolve the input as URL and print the result URL')
    parser.add_argument('--ignore-cache', action='store_true', help='do not read cached entries')
    parser.add_argument('--no-cache', action='store_true', help='do not use the persistent cache')
    parser.add_argument('--stats', action='store_true', help='log resolver statistics at the end')
    return parser


async def run(args: argparse.Namespace, resolver: Resolver = None) -> int:
    """Resolve every name given on the command line; returns the exit code."""
    if resolver is None:
        resolver = Resolver(cache=None if args.no_cache else SQLiteCache())
    exit_code = 0
    try:
        for name in args.names:
            try:
                if args.url:
                    print(await resolver.resolve_url(name, ignore_cache=args.ignore_cache))
                elif args.protocol:
                    key = await resolver.resolve_name(name, args.protocol, ignore_cache=args.ignore_cache)
                    print(f"{args.protocol}: {key}")
                else:
                    keys = await resolver.resolve(name, ignore_cache=args.ignore_cache)
                    for protocol, key in keys.items():
                        print(f"{protocol}: {key if key is not None else '-'}")
            except (RecordNotFoundError, NotFQDNError) as e:
                logger.error(str(e))
                exit_code = 1
        if args.stats:
            resolver.log_stats()
    finally:
        await resolver.close()
    return exit_code


def main(argv=None):
    """Main entry point for the hyper-dns console script."""
    args = build_parser().parse_args(argv)
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
