"""Configuration module for hyper-dns."""
import os
import logging

VERSION = '1.0.0'


def _system_nameserver(path='/etc/resolv.conf', default='1.1.1.1'):
    """Return the first nameserver listed in resolv.conf."""
    try:
        with open(path) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[0] == 'nameserver':
                    return parts[1]
    except OSError:
        pass
    return default


def _default_cache_file():
    base = os.getenv('XDG_CACHE_HOME') or os.path.join(os.path.expanduser('~'), '.cache')
    return os.path.join(base, 'hyper-dns', 'cache.db')


# --- Configuration ---
# DOH_LOOKUPS is a comma-separated list of DNS-over-HTTPS JSON endpoints
_doh_lookups_env = os.getenv(
    'DOH_LOOKUPS',
    'https://cloudflare-dns.com:443/dns-query,https://dns.google:443/resolve'
)
DOH_LOOKUPS = [url.strip() for url in _doh_lookups_env.split(',') if url.strip()]

USER_AGENT = os.getenv('HYPER_DNS_USER_AGENT', f'hyper-dns/{VERSION}')
TTL = int(os.getenv('TTL', 60 * 60))  # 1hr
MIN_TTL = int(os.getenv('MIN_TTL', 30))
MAX_TTL = int(os.getenv('MAX_TTL', 60 * 60 * 24 * 7))  # 1 week

CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'true').lower() == 'true'
CACHE_MAX_SIZE = int(os.getenv('CACHE_MAX_SIZE', 1000))
CACHE_FILE = os.getenv('HYPER_DNS_CACHE_FILE') or _default_cache_file()

SYSTEM_DNS = os.getenv('SYSTEM_DNS') or _system_nameserver()

_timeout_env = os.getenv('LOOKUP_TIMEOUT', '')
LOOKUP_TIMEOUT = float(_timeout_env) if _timeout_env else None

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

# --- Logging Setup ---
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger("hyper-dns")
