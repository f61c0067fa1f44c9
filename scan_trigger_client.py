from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests


@dataclass
class ScanTriggerConfig:
    base_url: str = "http://localhost:3002"
    timeout_seconds: Optional[int] = None


class ScanTriggerClient:
    """
    Client used by the job-log scanner to ask the tool manager for a re-scan.
    - POSTs to {base_url}/api/trigger-scan, which blocks until the cycle is done.
    - No timeout by default: a cycle may legitimately take a while.
    """

    def __init__(self, cfg: Optional[ScanTriggerConfig] = None, session: Optional[requests.Session] = None):
        self.cfg = cfg or ScanTriggerConfig()
        self.base_url = (self.cfg.base_url or "").rstrip("/")
        self.session = session or requests.Session()
        self.timeout = self.cfg.timeout_seconds

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _post(self, path: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.post(url, headers=self._headers(), json={}, timeout=self.timeout)
        except requests.RequestException as e:
            logging.warning("Tool manager unreachable at %s: %s", url, e)
            return None
        if 200 <= resp.status_code < 300:
            try:
                return resp.json()
            except ValueError:
                return {}
        logging.warning("Tool manager rejected %s: HTTP %s", path, resp.status_code)
        return None

    def trigger_scan(self) -> bool:
        """Ask for a reconciliation cycle. Returns True once it completed."""
        body = self._post("/api/trigger-scan")
        if body is None:
            return False
        logging.info("Tool analysis scan completed: %s", body.get("message", "ok"))
        return bool(body.get("success", True))

    def status(self) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/api/status"
        try:
            resp = self.session.get(url, headers=self._headers(), timeout=self.timeout or 8)
        except requests.RequestException as e:
            logging.info("Tool manager status check failed: %s", e)
            return None
        if resp.status_code != 200:
            return None
        try:
            return resp.json()
        except ValueError:
            return None
