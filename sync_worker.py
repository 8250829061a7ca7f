#!/usr/bin/env python3
"""
POS Sync Worker

Headless companion to the terminal: keeps probing the server and drains the
local sync queue whenever it is reachable.

Env vars:
  POS_DB_PATH            SQLite DB path (default: pos.db)
  POS_API_BASE           central server base URL (unset = stay offline)
  SYNC_INTERVAL          seconds between periodic drains (default: 300)
  CONNECTIVITY_INTERVAL  seconds between reachability probes (default: 10)
  POS_LOG_LEVEL          logging level (default: INFO)

Run:
  python sync_worker.py          # loop until Ctrl+C
  python sync_worker.py --once   # probe, drain once, print the summary
"""
import argparse
import json
import logging
import time

import pos_config as cfg
from pos_connectivity import ConnectivityMonitor
from pos_store import LocalStore
from pos_sync import SyncEngine

logging.basicConfig(
    level=getattr(logging, cfg.POS_LOG_LEVEL, logging.INFO),
    format='[sync] %(asctime)s %(levelname)s %(message)s',
)
log = logging.getLogger('sync_worker')


def build(db_path: str = cfg.POS_DB_PATH, base_url=cfg.POS_API_BASE, background: bool = True):
    store = LocalStore(db_path, cfg.POS_SCHEMA_PATH)
    engine = SyncEngine(store, base_url)
    monitor = ConnectivityMonitor(store, engine, background=background)
    return store, engine, monitor


def run_once(monitor: ConnectivityMonitor) -> dict:
    # coming online runs the drain itself when the monitor is not in background mode
    if monitor.check() and monitor.last_result:
        return monitor.last_result
    return monitor.sync_now()


def main(argv=None):
    parser = argparse.ArgumentParser(description='Drain the local POS sync queue to the server')
    parser.add_argument('--once', action='store_true', help='run a single drain and exit')
    parser.add_argument('--db', default=cfg.POS_DB_PATH, help='SQLite DB path')
    args = parser.parse_args(argv)

    store, engine, monitor = build(args.db, background=not args.once)
    if args.once:
        try:
            print(json.dumps(run_once(monitor), indent=2))
        finally:
            monitor.close()
            store.close()
        return

    if not engine.base_url:
        log.warning('POS_API_BASE is not set; queue will only grow until a server is configured')
    log.info('starting worker: interval=%ss, probe=%ss, db=%s', cfg.SYNC_INTERVAL, cfg.CONNECTIVITY_INTERVAL, args.db)
    monitor.start(cfg.CONNECTIVITY_INTERVAL)
    try:
        while True:
            time.sleep(cfg.SYNC_INTERVAL)
            if monitor.online:
                monitor.sync_now()
            else:
                log.info('offline; %d entr(ies) waiting', monitor.unsynced_count)
    except KeyboardInterrupt:
        log.info('exiting on Ctrl+C')
    finally:
        monitor.close()
        store.close()


if __name__ == '__main__':
    main()
