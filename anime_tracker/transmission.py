from __future__ import annotations

"""
Transmission RPC integration.

Transmission guards its RPC endpoint with a session id handed out on a 409.
This module does the handshake, keeps the id behind a lock, and when
Transmission decides the id has gone stale it refreshes once and tries again.
Twice is a pattern; we give up and let the caller sort it out.
"""

import logging
import threading
from typing import Any, Dict, Optional

import requests

from .config import TransmissionConfig

SESSION_HEADER = "X-Transmission-Session-Id"
STALE_SESSION_STATUS = 409


class TransmissionError(Exception):
    """Raised when Transmission is unreachable, refuses us, or rejects the request."""


class StaleSessionError(TransmissionError):
    """Raised when the session id is refused even after a refresh."""


class TransmissionController:
    """Coordinate RPC calls to Transmission."""

    def __init__(self, config: TransmissionConfig, session: Optional[requests.Session] = None):
        """
        Parameters
        ----------
        config : TransmissionConfig
            Connection details, credentials, and start-mode preferences.
        session : requests.Session, optional
            Injected HTTP session; a fresh one is created otherwise.
        """

        self.config = config
        self._http = session or requests.Session()
        if config.username is not None:
            self._http.auth = (config.username, config.password or "")
        self._session_id: Optional[str] = None
        self._session_lock = threading.Lock()

    @property
    def session_id(self) -> Optional[str]:
        with self._session_lock:
            return self._session_id

    def ensure_available(self) -> None:
        """
        Handshake with Transmission up front so a bad host or password shows up
        at startup rather than on the first download.

        Raises
        ------
        TransmissionError
            If the daemon cannot be reached or does not hand out a session id.
        """

        self.refresh_session()

    def refresh_session(self, response: Optional[requests.Response] = None) -> str:
        """
        Obtain a fresh session id.

        Parameters
        ----------
        response : requests.Response, optional
            A 409 response that already carries the new id; saves a round trip.

        Returns
        -------
        str
            The new session id.
        """

        session_id = response.headers.get(SESSION_HEADER) if response is not None else None
        if not session_id:
            try:
                handshake = self._http.post(self.config.url, json={}, timeout=self.config.timeout)
            except requests.RequestException as exc:
                raise TransmissionError(f"Transmission unreachable at {self.config.url}: {exc}") from exc
            if handshake.status_code == 401:
                raise TransmissionError("Transmission rejected the credentials (HTTP 401)")
            session_id = handshake.headers.get(SESSION_HEADER)
            if not session_id:
                raise TransmissionError(
                    f"Transmission handshake returned HTTP {handshake.status_code} without {SESSION_HEADER}"
                )

        with self._session_lock:
            self._session_id = session_id
        logging.debug("Transmission session id refreshed")
        return session_id

    def call(self, method: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Perform one RPC call.

        Parameters
        ----------
        method : str
            RPC method, e.g. ``"torrent-add"``.
        arguments : dict, optional
            Method arguments.

        Returns
        -------
        dict
            The ``arguments`` object of a successful response.

        Raises
        ------
        StaleSessionError
            If the session id is refused again right after a refresh.
        TransmissionError
            On network errors, auth failures, HTTP errors, or a ``result``
            other than ``"success"``.
        """

        payload = {"method": method, "arguments": arguments or {}}
        session_id = self.session_id or self.refresh_session()

        response = self._post(payload, session_id)
        if response.status_code == STALE_SESSION_STATUS:
            logging.info("Transmission session went stale, refreshing and retrying %s", method)
            session_id = self.refresh_session(response)
            response = self._post(payload, session_id)
            if response.status_code == STALE_SESSION_STATUS:
                raise StaleSessionError(f"Transmission refused a fresh session id for {method}")

        if response.status_code == 401:
            raise TransmissionError("Transmission rejected the credentials (HTTP 401)")
        if response.status_code != 200:
            raise TransmissionError(f"Transmission {method} failed with HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise TransmissionError(f"Transmission sent a non-JSON reply to {method}") from exc

        result = body.get("result")
        if result != "success":
            raise TransmissionError(f"Transmission rejected {method}: {result}")
        return body.get("arguments") or {}

    def _post(self, payload: Dict[str, Any], session_id: str) -> requests.Response:
        try:
            return self._http.post(
                self.config.url,
                json=payload,
                headers={SESSION_HEADER: session_id},
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            raise TransmissionError(f"Transmission request failed: {exc}") from exc

    def add(self, link: str, download_dir: Optional[str] = None, start: Optional[bool] = None) -> Dict[str, Any]:
        """
        Add a magnet link or .torrent URL.

        Parameters
        ----------
        link : str
            Magnet URI or URL Transmission can fetch.
        download_dir : str, optional
            Target directory; Transmission's default when omitted.
        start : bool, optional
            Override the configured start/paused behavior for this call.

        Returns
        -------
        dict
            ``torrent-added`` (or ``torrent-duplicate``) info from Transmission.
        """

        start = self.config.start if start is None else start
        arguments: Dict[str, Any] = {"filename": link, "paused": not start}
        if download_dir:
            arguments["download-dir"] = download_dir

        result = self.call("torrent-add", arguments)
        if "torrent-duplicate" in result:
            logging.info("Transmission already had %s", result["torrent-duplicate"].get("name", link))
            return result["torrent-duplicate"]
        return result.get("torrent-added", {})
