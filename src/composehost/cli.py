#!/usr/bin/env python3
"""
composehost CLI entry point.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional

from .cli_utils import get_cli_version
from .engine import main_execution


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    """
    Parse command-line arguments for composehost.

    Global arguments:
    1. -C, --root <path> - Project root (default: walk up from cwd)
    2. -H, --host <name> - Host identity (default: $COMPOSEHOST_HOST or hostname)
    3. --log-level <level> - Override project.log_level
    4. --version - Print version and exit

    Commands: render, check, up, hosts, config, keygen, encrypt, decrypt, updatekeys
    """
    parser = argparse.ArgumentParser(
        prog='composehost',
        description='composehost: per-host Docker Compose resolution with encrypted secrets',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Print the resolved compose document for this machine
  %(prog)s render

  # Render for another host and show where each variable came from
  %(prog)s --host mabel render --print-context

  # Edit secrets: decrypt, change, re-encrypt
  %(prog)s --host mabel decrypt -o hosts/mabel/secrets.env
  %(prog)s --host mabel encrypt --delete-plaintext

  # A new teammate published keys/otis.pub; grant access without touching values
  %(prog)s --host mabel updatekeys
        '''
    )

    parser.add_argument(
        '-C', '--root',
        type=Path,
        default=None,
        metavar='PATH',
        help='Project root (default: nearest parent with composehost.defaults.toml.j2 or compose.yaml + hosts/)'
    )

    parser.add_argument(
        '-H', '--host',
        type=str,
        default=None,
        metavar='NAME',
        help='Host identity (default: $COMPOSEHOST_HOST, then the short hostname)'
    )

    parser.add_argument(
        '--log-level',
        type=str.upper,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Log level (default: project.log_level from settings)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f"%(prog)s {get_cli_version()}"
    )

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND', required=True)

    render = subparsers.add_parser('render', help='Resolve and print the compose document')
    render.add_argument(
        '-o', '--output',
        type=Path,
        default=None,
        metavar='FILE',
        help='Write the document to FILE instead of stdout (mode 600)'
    )
    render.add_argument(
        '--print-context',
        action='store_true',
        help='Print the variable set with provenance to stderr (secrets redacted)'
    )

    subparsers.add_parser('check', help='Resolve and report variable usage and plaintext secrets')

    up = subparsers.add_parser('up', help='Resolve and run docker compose up with the document on stdin')
    up.add_argument(
        '--dry-run',
        action='store_true',
        help='Resolve but skip docker compose execution'
    )
    up.add_argument(
        '-p', '--project-name',
        type=str,
        default=None,
        metavar='NAME',
        help='Compose project name (default: document name, then root directory name)'
    )
    up.add_argument(
        '--no-detach',
        dest='detach',
        action='store_false',
        help='Run in the foreground instead of -d'
    )
    up.add_argument(
        '--profile',
        dest='profiles',
        action='append',
        default=[],
        metavar='PROFILE',
        help='Enable a compose profile (repeatable)'
    )

    subparsers.add_parser('hosts', help='List host identities')
    subparsers.add_parser('config', help='Print effective settings as TOML')

    keygen = subparsers.add_parser('keygen', help='Create the local private key and publish its public key')
    keygen.add_argument(
        '--name',
        type=str,
        default=None,
        metavar='NAME',
        help='Keystore name for the public key (default: host identity)'
    )
    keygen.add_argument(
        '--force',
        action='store_true',
        help='Replace an existing private key'
    )

    encrypt = subparsers.add_parser('encrypt', help='Encrypt the host plaintext secrets file')
    encrypt.add_argument(
        '--delete-plaintext',
        action='store_true',
        help='Remove the plaintext file after a successful encryption'
    )

    decrypt = subparsers.add_parser('decrypt', help='Decrypt the host secret document')
    decrypt.add_argument(
        '-o', '--output',
        type=Path,
        default=None,
        metavar='FILE',
        help='Write dotenv output to FILE instead of stdout (mode 600)'
    )

    subparsers.add_parser('updatekeys', help='Re-wrap the data key for the current recipients')

    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)
    result = main_execution(
        command=args.command,
        root=args.root,
        host=args.host,
        log_level=args.log_level,
        output=getattr(args, 'output', None),
        print_context=getattr(args, 'print_context', False),
        dry_run=getattr(args, 'dry_run', False),
        project_name=getattr(args, 'project_name', None),
        detach=getattr(args, 'detach', True),
        profiles=getattr(args, 'profiles', None),
        name=getattr(args, 'name', None),
        force=getattr(args, 'force', False),
        delete_plaintext=getattr(args, 'delete_plaintext', False),
    )

    if result.get('status') == 'success':
        return 0
    return 1


if __name__ == '__main__':
    raise SystemExit(main())
