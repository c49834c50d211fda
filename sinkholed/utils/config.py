import configparser
import copy
import logging
import os

from sinkholed.core.dserver import DOT_FRAMINGS, FRAMING_RAW
from sinkholed.core.resolver import DEFAULT_DOH_ENDPOINT


DEFAULT_CONFIG_PATH = 'config/sinkholed.conf'

DEFAULTS = {
    'verbose': False,
    'listen_ip': '0.0.0.0',
    'listen_port': 53,
    'dot_enabled': True,
    'dot_listen_port': 853,
    'dot_certfile': 'ssl/cert.pem',
    'dot_keyfile': 'ssl/key.pem',
    'dot_framing': FRAMING_RAW,
    'doh_endpoint': DEFAULT_DOH_ENDPOINT,
    'dns_cache_ttl': 300,
    'dns_cache_max_size': 1024,
    'upstream_doh_timeout': 5.0,
    'upstream_retries': 2,
    'upstream_initial_backoff': 0.1,
    'blocklists': {'file': 'blocklist.txt', 'urls': [], 'interval_seconds': 0},
    'dns_logging_enabled': False,
    'dns_log_dir': '/var/log/sinkholed',
    'dns_log_retention_days': 7,
}


def load_config(path=DEFAULT_CONFIG_PATH):
    if not os.path.exists(path):
        # return defaults if config missing
        return copy.deepcopy(DEFAULTS)

    config = configparser.ConfigParser()
    config.read(path)

    # DoT listener
    dot_framing = config.get('dot', 'framing', fallback=FRAMING_RAW).strip().lower()
    if dot_framing not in DOT_FRAMINGS:
        logging.warning("Unknown DoT framing %r, using %r", dot_framing, FRAMING_RAW)
        dot_framing = FRAMING_RAW

    # blocklist sources
    block_urls = config.get('blocklists', 'urls', fallback='')
    urls_list = [u.strip() for u in block_urls.split(',') if u.strip()]
    block_file = config.get('blocklists', 'file', fallback=DEFAULTS['blocklists']['file']).strip()

    return {
        'verbose': config.getboolean('logging', 'verbose', fallback=False),
        'listen_ip': config.get('interface', 'listen_ip', fallback='0.0.0.0'),
        'listen_port': config.getint('interface', 'listen_port', fallback=53),
        'dot_enabled': config.getboolean('dot', 'enabled', fallback=True),
        'dot_listen_port': config.getint('dot', 'listen_port', fallback=853),
        'dot_certfile': config.get('dot', 'certfile', fallback='ssl/cert.pem'),
        'dot_keyfile': config.get('dot', 'keyfile', fallback='ssl/key.pem'),
        'dot_framing': dot_framing,
        'doh_endpoint': config.get('upstream', 'doh_endpoint', fallback=DEFAULT_DOH_ENDPOINT),
        'dns_cache_ttl': config.getint('upstream', 'dns_cache_ttl', fallback=300),
        'dns_cache_max_size': config.getint('upstream', 'dns_cache_max_size', fallback=1024),
        'upstream_doh_timeout': config.getfloat('advanced', 'upstream_doh_timeout', fallback=5.0),
        'upstream_retries': config.getint('advanced', 'upstream_retries', fallback=2),
        'upstream_initial_backoff': config.getfloat('advanced', 'upstream_initial_backoff', fallback=0.1),
        'blocklists': {
            'file': block_file or None,
            'urls': urls_list,
            'interval_seconds': config.getint('blocklists', 'interval_seconds', fallback=0),
        },
        'dns_logging_enabled': config.getboolean('logging', 'dns_logging_enabled', fallback=False),
        'dns_log_dir': config.get('logging', 'dns_log_dir', fallback='/var/log/sinkholed'),
        'dns_log_retention_days': config.getint('logging', 'dns_log_retention_days', fallback=7),
    }
