#!/usr/bin/env python3
"""
File name and marker constants for composehost.

CRITICAL: This is the SINGLE SOURCE OF TRUTH for project file names.
All modules MUST import from this file instead of using hardcoded strings.

Naming Convention:
- composehost.defaults.toml.j2 = Settings defaults (committed)
- composehost.toml.j2 = Settings overrides (gitignored, or per host)
- *.enc.toml = Encrypted secret documents (committed)
- secrets.env = Plaintext secret edits (gitignored)
"""

# ============================================================================
# Settings Filenames (CANONICAL - DO NOT HARDCODE)
# ============================================================================

SETTINGS_DEFAULTS = 'composehost.defaults.toml.j2'
SETTINGS_OVERRIDES = 'composehost.toml.j2'

# ============================================================================
# Project Layout Defaults (overridable through settings)
# ============================================================================

BASE_DOCUMENT = 'compose.yaml'
BASE_VARIABLES = '.env'
HOSTS_DIR = 'hosts'
OVERRIDE_DOCUMENT = 'compose.override.yaml'
HOST_VARIABLES = '.env'
SECRETS_DOCUMENT = 'secrets.enc.toml'
SECRETS_PLAINTEXT = 'secrets.env'
KEYSTORE_DIR = 'keys'
PUBLIC_KEY_SUFFIX = '.pub'
PRIVATE_KEY_FILE = '~/.config/composehost/key.txt'

# Keys whose names match this pattern are encrypted at rest unless a rule says otherwise
DEFAULT_ENCRYPTED_REGEX = r'(PASSWORD|SECRET|TOKEN|PRIVATE_KEY|API_KEY)'

# ============================================================================
# Environment Variables
# ============================================================================

ENV_HOST = 'COMPOSEHOST_HOST'
ENV_KEY_FILE = 'COMPOSEHOST_KEY_FILE'
ENV_ROOT = 'COMPOSEHOST_ROOT'

# ============================================================================
# Secret Document Markers
# ============================================================================

ENCRYPTED_VALUE_PREFIX = 'ENC[AES256_GCM,'
SECRETS_FORMAT_VERSION = '1'
PUBLIC_KEY_PREFIX = 'chpub1'
PRIVATE_KEY_PREFIX = 'CHSEC1'
REDACTED = '***REDACTED***'

# Variable layer names, in precedence order (later wins): base, secrets, host
LAYER_BASE = 'base'
LAYER_SECRETS = 'secrets'
LAYER_HOST = 'host'


def get_plaintext_name(encrypted_name: str) -> str:
    """
    Get the plaintext edit filename for an encrypted secret document.

    Examples:
        >>> get_plaintext_name('secrets.enc.toml')
        'secrets.env'
        >>> get_plaintext_name('db.enc.toml')
        'db.env'
    """
    return encrypted_name.replace('.enc.toml', '.env')
