'''Parses the configuration file and sets project wide constants.

Values come from DEFAULTS unless dhtdiscovery.cfg (looked up in the working
directory) overrides them. Command line flags override both.
'''

import os
from os.path import join, isfile
from configparser import ConfigParser

CONFIG_FILE = join(os.getcwd(), 'dhtdiscovery.cfg')

DEFAULTS = {
    'ksize': '8',
    'alpha': '3',
    'search_interval': '300',
    'max_bootstrap_nodes': '20',
    'receive_buffer': '4096',
    'version_tag': 'NT',
    'loglevel': 'info',
    'log_file': '',
}


def _version_tag(string):
    '''
    The engine expects exactly four bytes; short tags are NUL padded.
    '''
    tag = string.encode('ascii')[:4]
    return tag + b'\0' * (4 - len(tag))


def _is_bootstrap_item(item):
    return item[0].startswith('bootstrap_node')


def parse_host_port(string):
    '''
    Accepts "host:port" or "[v6 address]:port", returns (host, port).
    '''
    host, sep, port = string.strip().rpartition(':')
    if not sep or not host:
        raise ValueError('expected host:port, got %r' % string)
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    return host, int(port)


cfg = ConfigParser(DEFAULTS)

if isfile(CONFIG_FILE):
    cfg.read(CONFIG_FILE)

for section in ('CONSTANTS', 'BOOTSTRAP'):
    if not cfg.has_section(section):
        cfg.add_section(section)

KSIZE = cfg.getint('CONSTANTS', 'KSIZE')
ALPHA = cfg.getint('CONSTANTS', 'ALPHA')
SEARCH_INTERVAL = cfg.getint('CONSTANTS', 'SEARCH_INTERVAL')
MAX_BOOTSTRAP_NODES = cfg.getint('CONSTANTS', 'MAX_BOOTSTRAP_NODES')
RECEIVE_BUFFER = cfg.getint('CONSTANTS', 'RECEIVE_BUFFER')
VERSION_TAG = _version_tag(cfg.get('CONSTANTS', 'VERSION_TAG'))
LOGLEVEL = cfg.get('CONSTANTS', 'LOGLEVEL')
LOG_FILE = cfg.get('CONSTANTS', 'LOG_FILE') or None

BOOTSTRAP_NODES = []

for item in cfg.items('BOOTSTRAP'):  # this also includes items in DEFAULTS
    if _is_bootstrap_item(item):
        try:
            node = parse_host_port(item[1])
        except ValueError:
            print('Warning: please check your configuration file: %s' % item[1])
            continue
        if node not in BOOTSTRAP_NODES:
            BOOTSTRAP_NODES.append(node)
