#!/usr/bin/env python3

import time

import requests
import requests_unixsocket


class FirecrackerAPI:
    """Client for the Firecracker control socket"""

    def __init__(self, socket_path, timeout=2):
        self.socket_path = str(socket_path)
        self.timeout = timeout
        self.session = requests_unixsocket.Session()
        self.base_url = f"http+unix://{self.socket_path.replace('/', '%2F')}"

    def _get(self, endpoint):
        """GET an endpoint, returning the decoded JSON body or None"""
        try:
            response = self.session.get(f"{self.base_url}{endpoint}", timeout=self.timeout)
        except (requests.exceptions.RequestException, OSError):
            return None
        if response.status_code != 200:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def check_socket_in_use(self):
        """Check if a Firecracker process is listening on the socket"""
        try:
            self.session.get(f"{self.base_url}/", timeout=self.timeout)
            return True
        except (requests.exceptions.RequestException, OSError):
            return False

    def wait_until_ready(self, timeout=10, interval=0.2, is_alive=None):
        """Poll the socket until the API answers

        Args:
            timeout: Seconds to wait in total
            interval: Seconds between attempts
            is_alive: Optional callable; stop early once it returns False

        Returns:
            bool: True once the API answered
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if is_alive is not None and not is_alive():
                return False
            if self.check_socket_in_use():
                return True
            time.sleep(interval)
        return False

    def get_instance_info(self):
        """Instance id, state and VMM version (GET /)"""
        return self._get("/")

    def get_vm_config(self):
        """Full machine configuration (GET /vm/config)"""
        return self._get("/vm/config")
