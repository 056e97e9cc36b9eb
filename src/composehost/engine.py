#!/usr/bin/env python3
"""
composehost engine.

Command implementations behind the CLI:
- render / check: resolve one host and emit or inspect the document
- up: resolve one host and hand the document to ``docker compose`` on stdin
- hosts / config: inspect the project layout and effective settings
- keygen / encrypt / decrypt / updatekeys: secret document workflow

Design principles:
1. Resolve fully, then emit: no partial document ever reaches disk or docker
2. Plaintext secrets stay in process memory unless the user asks for a file
3. Every failure is a ComposeHostError with a stage, reported on one line
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Optional

from .cli_utils import default_host_identity
from .config_constants import LAYER_BASE, LAYER_HOST, PUBLIC_KEY_SUFFIX
from .crypto import generate_identity, load_identity, write_identity
from .envfile import dump_env_text, load_env_file, load_env_file_if_exists, write_env_file
from .errors import ComposeHostError, DocumentNotFoundError, EngineError
from .file_utils import write_text_atomic
from .loader import dump_document
from .render_utils import build_check_lines, build_context_lines
from .resolver import Resolution, list_hosts, locate_host, resolve
from .secret_store import (
    decrypt_document,
    encrypt_variables,
    load_keystore,
    load_secret_document,
    select_recipients,
    update_recipients,
    write_secret_document,
)
from .settings import ProjectSettings, find_project_root, load_settings

logger = logging.getLogger(__name__)


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure logging module with specified level.

    Log lines go to stderr so stdout only carries rendered output.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR
    }

    level = level_map.get(log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='[%(levelname)s] %(message)s',
        stream=sys.stderr,
        force=True  # Reconfigure if already configured
    )

    logger.setLevel(level)
    logger.debug(f"Logging configured: {log_level.upper()}")


def check_docker_compose() -> None:
    """Fail with EngineError unless the docker compose v2 CLI is available."""
    if os.getenv('SKIP_DEPENDENCY_CHECK') == '1':
        return

    try:
        result = subprocess.run(
            ['docker', 'compose', 'version'],
            capture_output=True,
            text=True,
            timeout=5
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise EngineError(f"docker compose v2 is not available: {e}") from e

    if result.returncode != 0:
        raise EngineError(
            "docker compose v2 is not available "
            "(https://docs.docker.com/compose/install/)"
        )


def build_compose_command(
    project_name: str,
    project_dir: Path,
    detach: bool = True,
    profiles: Optional[list[str]] = None,
) -> list[str]:
    cmd = [
        'docker', 'compose',
        '--project-name', project_name,
        '--project-directory', str(project_dir),
        '-f', '-',
    ]
    for profile in profiles or []:
        cmd.extend(['--profile', profile])
    cmd.append('up')
    if detach:
        cmd.append('-d')
    return cmd


def execute_docker_compose_with_logs(
    document_text: str,
    cmd: list[str],
    dry_run: bool = False,
    env: Optional[dict] = None
) -> dict:
    """
    Feed the resolved document to docker compose on stdin and stream its output.
    """
    result = {
        'status': 'success',
        'message': '',
        'stdout': '',
    }

    if dry_run:
        logger.info(f"Dry-run mode: skipping {' '.join(cmd)}")
        return result

    logger.info(f"Executing: {' '.join(cmd)}")

    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            env=env
        )
    except FileNotFoundError as e:
        raise EngineError(f"cannot start docker compose: {e}") from e

    try:
        stdin_error = None
        try:
            proc.stdin.write(document_text)
        except OSError as e:
            # compose exited before reading the whole document
            stdin_error = e
        finally:
            with contextlib.suppress(OSError):
                proc.stdin.close()

        stdout_lines = []
        for line in proc.stdout:
            print(f"  [COMPOSE] {line.rstrip()}", file=sys.stderr, flush=True)
            stdout_lines.append(line)

        proc.wait()
        result['stdout'] = ''.join(stdout_lines)

        if proc.returncode != 0:
            result['status'] = 'error'
            result['message'] = f"docker compose failed with exit code {proc.returncode}"
            return result
        if stdin_error is not None:
            result['status'] = 'error'
            result['message'] = f"docker compose did not read the document: {stdin_error}"
            return result

        logger.info("docker compose up completed")

    except KeyboardInterrupt:
        logger.warning("User interrupted docker compose execution")
        result['status'] = 'interrupted'
        result['message'] = 'User interrupted execution'

        try:
            proc.terminate()
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()

    except OSError as e:
        logger.error(f"docker compose execution failed: {e}")
        result['status'] = 'error'
        result['message'] = f"docker compose execution failed: {e}"
        with contextlib.suppress(OSError):
            proc.kill()
        proc.wait()

    return result


def find_plaintext_secrets(settings: ProjectSettings, resolution: Resolution) -> dict[str, list[str]]:
    """
    Secret-looking keys that sit in committed plaintext variable files
    (base and host .env) instead of the encrypted document.
    """
    pattern = re.compile(settings.rule_for_host(resolution.host).encrypted_regex)
    found: dict[str, list[str]] = {}
    for layer, path in ((LAYER_BASE, resolution.layout.base_variables), (LAYER_HOST, resolution.layout.host_variables)):
        keys = [key for key in load_env_file_if_exists(path) if pattern.search(key)]
        if keys:
            found[f"{path} ({layer})"] = keys
    return found


def _resolve_root(root: Optional[Path]) -> Path:
    if root is not None:
        return Path(root).resolve()
    return find_project_root(Path.cwd())


def _emit(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def run_render(settings: ProjectSettings, host: str, output: Optional[Path] = None, print_context: bool = False) -> dict:
    resolution = resolve(settings, host)
    text = dump_document(resolution.document)

    if print_context:
        for line in build_context_lines(resolution):
            print(line, file=sys.stderr)

    if output is not None:
        write_text_atomic(output, text)
        logger.info(f"Rendered host '{host}' to {output}")
    else:
        _emit(text)

    return {'status': 'success', 'host': host, 'document': resolution.document}


def run_check(settings: ProjectSettings, host: str) -> dict:
    resolution = resolve(settings, host)
    plaintext_secrets = find_plaintext_secrets(settings, resolution)

    for line in build_check_lines(resolution, plaintext_secrets):
        print(line)

    if plaintext_secrets:
        return {
            'status': 'error',
            'message': "check: secret-like keys found in plaintext variable files; move them to the encrypted document",
        }
    return {'status': 'success', 'host': host}


def run_up(
    settings: ProjectSettings,
    host: str,
    project_name: Optional[str] = None,
    dry_run: bool = False,
    detach: bool = True,
    profiles: Optional[list[str]] = None,
) -> dict:
    if not dry_run:
        check_docker_compose()

    resolution = resolve(settings, host)
    text = dump_document(resolution.document)

    name = project_name or resolution.document.get('name') or settings.root.name
    cmd = build_compose_command(str(name), settings.root, detach=detach, profiles=profiles)
    docker_result = execute_docker_compose_with_logs(text, cmd, dry_run=dry_run)

    result = {'status': docker_result['status'], 'host': host}
    if docker_result['message']:
        result['message'] = f"compose: {docker_result['message']}"
    return result


def run_hosts(settings: ProjectSettings) -> dict:
    current = default_host_identity()
    hosts = list_hosts(settings)
    for host in hosts:
        marker = '*' if host == current else ' '
        print(f"{marker} {host}")
    if not hosts:
        logger.warning(f"No host directories under {settings.hosts_path}")
    return {'status': 'success', 'hosts': hosts}


def run_config(settings: ProjectSettings) -> dict:
    import tomli_w

    _emit(tomli_w.dumps(settings.as_dict()))
    return {'status': 'success'}


def run_keygen(settings: ProjectSettings, name: str, force: bool = False) -> dict:
    """
    Create the local private key (kept if present unless forced) and publish
    its public key to the keystore as ``<name>.pub``.
    """
    key_path = settings.private_key
    if key_path.exists() and not force:
        identity = load_identity(key_path)
        logger.info(f"Using existing private key: {key_path}")
    else:
        identity = generate_identity()
        write_identity(key_path, identity, force=force)
        logger.info(f"Created private key: {key_path}")

    pub_path = settings.keystore / f"{name}{PUBLIC_KEY_SUFFIX}"
    pub_path.parent.mkdir(parents=True, exist_ok=True)
    pub_path.write_text(f"# {name}\n{identity.public_key}\n", encoding="utf-8")
    logger.info(f"Published public key: {pub_path}")
    print(identity.public_key)

    return {'status': 'success', 'public_key': identity.public_key, 'public_key_file': pub_path}


def run_encrypt(settings: ProjectSettings, host: str, delete_plaintext: bool = False) -> dict:
    layout = locate_host(settings, host)
    if not layout.secrets_plaintext.is_file():
        raise DocumentNotFoundError(str(layout.secrets_plaintext), "plaintext secret file")

    variables = load_env_file(layout.secrets_plaintext)
    rule = settings.rule_for_host(host)
    recipients = select_recipients(load_keystore(settings.keystore), rule.recipients)

    document = encrypt_variables(variables, recipients, rule.encrypted_regex)
    write_secret_document(layout.secrets_document, document)
    logger.info(f"Wrote {layout.secrets_document}")

    if delete_plaintext:
        layout.secrets_plaintext.unlink()
        logger.info(f"Removed plaintext file {layout.secrets_plaintext}")

    return {'status': 'success', 'host': host, 'document': layout.secrets_document}


def run_decrypt(settings: ProjectSettings, host: str, output: Optional[Path] = None) -> dict:
    layout = locate_host(settings, host)
    document = load_secret_document(layout.secrets_document)
    variables = decrypt_document(document, load_identity(settings.private_key))

    if output is not None:
        write_env_file(
            output, variables,
            header=f"Decrypted from {layout.secrets_document.name}; re-encrypt with 'composehost encrypt'.",
        )
        logger.info(f"Wrote plaintext secrets to {output} (do not commit)")
    else:
        _emit(dump_env_text(variables))

    return {'status': 'success', 'host': host}


def run_updatekeys(settings: ProjectSettings, host: str) -> dict:
    layout = locate_host(settings, host)
    document = load_secret_document(layout.secrets_document)
    rule = settings.rule_for_host(host)
    recipients = select_recipients(load_keystore(settings.keystore), rule.recipients)

    updated = update_recipients(document, load_identity(settings.private_key), recipients)
    write_secret_document(layout.secrets_document, updated)
    logger.info(f"Recipients for {layout.secrets_document}: {', '.join(updated.recipient_names)}")
    return {'status': 'success', 'host': host, 'recipients': updated.recipient_names}


def main_execution(
    command: str,
    root: Optional[Path] = None,
    host: Optional[str] = None,
    log_level: Optional[str] = None,
    output: Optional[Path] = None,
    print_context: bool = False,
    dry_run: bool = False,
    project_name: Optional[str] = None,
    detach: bool = True,
    profiles: Optional[list[str]] = None,
    name: Optional[str] = None,
    force: bool = False,
    delete_plaintext: bool = False,
) -> dict:
    """
    Main execution pipeline for composehost.

    Returns a result dict with 'status' ('success', 'error' or 'interrupted')
    and, on failure, a single-line 'message'.
    """
    configure_logging(log_level or "INFO")

    try:
        project_root = _resolve_root(root)
        host = host or default_host_identity()
        settings = load_settings(project_root, host=host)

        if not log_level:
            configure_logging(settings.log_level)

        logger.debug(f"Project root: {project_root}")
        logger.debug(f"Host identity: {host}")
        for source in settings.sources:
            logger.debug(f"Settings source: {source}")

        if command == 'render':
            result = run_render(settings, host, output=output, print_context=print_context)
        elif command == 'check':
            result = run_check(settings, host)
        elif command == 'up':
            result = run_up(
                settings, host,
                project_name=project_name,
                dry_run=dry_run,
                detach=detach,
                profiles=profiles,
            )
        elif command == 'hosts':
            result = run_hosts(settings)
        elif command == 'config':
            result = run_config(settings)
        elif command == 'keygen':
            result = run_keygen(settings, name or host, force=force)
        elif command == 'encrypt':
            result = run_encrypt(settings, host, delete_plaintext=delete_plaintext)
        elif command == 'decrypt':
            result = run_decrypt(settings, host, output=output)
        elif command == 'updatekeys':
            result = run_updatekeys(settings, host)
        else:
            raise ValueError(f"unknown command: {command}")

    except ComposeHostError as e:
        result = {'status': 'error', 'message': str(e)}
    except FileExistsError as e:
        result = {'status': 'error', 'message': f"keygen: {e}"}

    if result.get('status') != 'success' and result.get('message'):
        logger.error(result['message'])

    return result
