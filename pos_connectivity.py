# Connectivity monitor: online/offline state, reachability probe, sync triggers
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

import pos_config as cfg
from pos_queries import LiveQuery, needs_attention_count, unsynced_count
from pos_store import LocalStore, get_state
from pos_sync import SyncEngine

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Decides when the sync engine runs.

    A sync is triggered once on every offline -> online transition, whenever
    the number of unsynced entries grows while online, and on demand via
    :meth:`sync_now`. Triggered syncs run on a worker thread unless
    ``background`` is False, so local mutations never wait on the network.
    """

    def __init__(self, store: LocalStore, engine: SyncEngine, probe_url: Optional[str] = None,
                 session: Optional[requests.Session] = None, background: bool = True,
                 probe_timeout: float = cfg.CONNECTIVITY_TIMEOUT):
        self.store = store
        self.engine = engine
        if probe_url is None and engine.base_url:
            probe_url = engine.base_url + cfg.CONNECTIVITY_PROBE_PATH
        self.probe_url = probe_url
        self.session = session or engine.session
        self.background = background
        self.probe_timeout = probe_timeout
        self.last_result: Optional[Dict[str, Any]] = None
        self._online = False
        self._state_lock = threading.Lock()
        self._listeners: List[Callable[[bool], None]] = []
        self._stop = threading.Event()
        self._probe_thread: Optional[threading.Thread] = None
        self._last_unsynced: Optional[int] = None
        self._unsynced = LiveQuery(store, unsynced_count)
        self._unsynced.subscribe(self._on_unsynced)

    # ---------- STATE ----------
    @property
    def online(self) -> bool:
        return self._online

    @property
    def unsynced_count(self) -> int:
        return self._unsynced.value or 0

    def set_online(self, flag: bool):
        flag = bool(flag)
        with self._state_lock:
            changed = flag != self._online
            self._online = flag
        if not changed:
            return
        logger.info("Terminal is now %s", "online" if flag else "offline")
        for cb in list(self._listeners):
            try:
                cb(flag)
            except Exception:
                logger.exception("Connectivity listener failed")
        if flag:
            self._trigger("reconnected")

    def add_listener(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return remove

    def status(self) -> Dict[str, Any]:
        with self.store.read() as conn:
            attention = needs_attention_count(conn)
            last_sync = get_state(conn, "last_sync_utc")
        return {
            "online": self.online,
            "syncing": self.engine.syncing,
            "unsynced": self.unsynced_count,
            "needs_attention": attention,
            "last_sync_utc": last_sync,
            "last_result": self.last_result,
        }

    # ---------- PROBE ----------
    def check(self) -> bool:
        """Probe the server once and record the outcome."""
        if not self.probe_url:
            self.set_online(False)
            return False
        try:
            resp = self.session.get(self.probe_url, timeout=self.probe_timeout)
            reachable = 200 <= resp.status_code < 300
        except requests.RequestException as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            reachable = False
        self.set_online(reachable)
        return reachable

    def start(self, interval: float = cfg.CONNECTIVITY_INTERVAL):
        if self._probe_thread and self._probe_thread.is_alive():
            return
        self._stop.clear()
        self._probe_thread = threading.Thread(
            target=self._probe_loop, args=(interval,), name='connectivity-probe', daemon=True
        )
        self._probe_thread.start()
        logger.info("Connectivity probe started (interval=%ss, url=%s)", interval, self.probe_url)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._probe_thread and self._probe_thread is not threading.current_thread():
            self._probe_thread.join(timeout)
        self._probe_thread = None

    def close(self):
        self.stop()
        self._unsynced.close()

    def _probe_loop(self, interval: float):
        while not self._stop.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("Connectivity check failed")
            self._stop.wait(interval)

    # ---------- TRIGGERS ----------
    def sync_now(self) -> Dict[str, Any]:
        """Manual trigger; runs in the caller's thread and returns the summary."""
        if not self.online:
            return self.engine.summary("offline", 0, "offline")
        return self._run_sync("manual")

    def _on_unsynced(self, count: int):
        previous, self._last_unsynced = self._last_unsynced, count
        if previous is not None and count > previous and self.online:
            self._trigger("local change")

    def _trigger(self, reason: str):
        if not self.background:
            self._run_sync(reason)
            return
        threading.Thread(target=self._run_sync, args=(reason,), name='sync-trigger', daemon=True).start()

    def _run_sync(self, reason: str) -> Dict[str, Any]:
        logger.debug("Sync triggered (%s)", reason)
        result = self.engine.sync()
        if result["status"] != "busy":
            self.last_result = result
        return result
