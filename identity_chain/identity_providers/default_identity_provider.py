# Copyright (c) 2026 identity-chain Authors
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import socket
from typing import Optional

from identity_chain.config_loader import Settings
from identity_chain.identity_providers.identity_provider import (IdentityProvider,
                                                                 ServiceIdentity)
from identity_chain.log import get_logger


class DefaultIdentityProvider(IdentityProvider):
    """Reports the configured name/version plus the host's name and first IPv4 address."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def resolve(self) -> ServiceIdentity:
        hostname = _get_hostname()
        return ServiceIdentity(
            name=self.settings.app,
            version=self.settings.version,
            ip=_lookup_ipv4(hostname) if hostname else None,
            hostname=hostname,
        )


def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError as e:
        get_logger().debug(f"Failed to resolve hostname: {e}")
        return ""


def _lookup_ipv4(hostname: str) -> Optional[str]:
    try:
        addresses = socket.getaddrinfo(hostname, None, family=socket.AF_INET)
    except OSError as e:
        get_logger().debug(f"Failed to resolve IPv4 address for {hostname}: {e}")
        return None

    for family, _, _, _, sockaddr in addresses:
        if family == socket.AF_INET:
            return sockaddr[0]
    return None
