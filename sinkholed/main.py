import argparse
import asyncio
import logging
import ssl
import sys

from sinkholed.core.blocklist import Blocklist
from sinkholed.core.dserver import run_server
from sinkholed.utils.config import DEFAULT_CONFIG_PATH, load_config
from sinkholed.utils.ListUpdater import fetch_blocklists_sync, load_blocklist_file


def build_blocklist(block_cfg: dict) -> Blocklist:
    domains = load_blocklist_file(block_cfg.get('file'))
    urls = block_cfg.get('urls', [])
    if urls:
        # perform initial synchronous fetch (wait), warn on failure
        remote, results = fetch_blocklists_sync(urls)
        failed = [src for src, ok in results if not ok]
        if failed:
            logging.warning(f"Some blocklist sources failed to fetch: {failed}")
        domains |= remote
    logging.info(f"Blocklist loaded with {len(domains)} domains")
    return Blocklist(domains)


def main(argv=None):
    parser = argparse.ArgumentParser(description="sinkholed filtering DNS server")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the configuration file")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    verbose = args.verbose or config.get("verbose", False)

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format='[%(levelname)s] %(message)s')
    logging.info("Configuration loaded successfully:")
    for key, value in config.items():
        logging.info(f"{key}: {value}")

    blocklist = build_blocklist(config.get('blocklists', {}))

    try:
        asyncio.run(run_server(config, blocklist))
    except KeyboardInterrupt:
        logging.info("Shutting down")
    except PermissionError as e:
        logging.error(f"Permission denied while binding DNS ports ({e}); run as root or use unprivileged ports")
        return 1
    except ssl.SSLError as e:
        logging.error(f"Could not load DoT certificate: {e}")
        return 1
    except OSError as e:
        logging.error(f"Startup failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
