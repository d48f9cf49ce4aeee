"""
Privacy handling for collected events.

IP anonymisation, removal of personal data from event properties and
pseudonymisation of session identifiers.
"""

import dataclasses
import hashlib
import ipaddress
from typing import Optional

from telemd.config.analytics_config import SecurityConfig
from telemd.pipeline.models import Event

SENSITIVE_PROPERTY_KEYS = frozenset({'email', 'phone', 'address', 'fullName', 'personalData'})


def anonymize_ip(ip_address: str) -> str:
    """Zero the host part: last IPv4 octet, last four IPv6 groups."""
    try:
        address = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        return 'anonymized'

    if address.version == 4:
        network = ipaddress.ip_network(f"{address}/24", strict=False)
        return str(network.network_address)

    groups = address.exploded.split(':')
    return ':'.join(groups[:4] + ['0000'] * 4)


def pseudonymize(identifier: str, salt: str = '') -> str:
    """Stable, non-reversible stand-in for an identifier."""
    digest = hashlib.sha256(f"{salt}{identifier}".encode('utf-8')).hexdigest()
    return f"hashed_{digest[:16]}"


class PrivacyFilter:
    """Event transform applied before events are queued."""

    def __init__(self, config: Optional[SecurityConfig] = None, salt: str = ''):
        self.config = config or SecurityConfig()
        self.salt = salt

    def __call__(self, event: Event) -> Event:
        return self.anonymize_event(event)

    def anonymize_event(self, event: Event) -> Event:
        if not self.config.enable_gdpr_compliance:
            return event

        context = event.context
        if self.config.anonymize_ip_addresses and context.ip_address:
            context = dataclasses.replace(context, ip_address=anonymize_ip(context.ip_address))

        session_id = event.session_id
        if self.config.pseudonymize_sessions:
            session_id = pseudonymize(session_id, self.salt)
            context = dataclasses.replace(context, user_id=None)

        properties = tuple((key, value) for key, value in event.properties
                           if key not in SENSITIVE_PROPERTY_KEYS)

        return dataclasses.replace(event, session_id=session_id,
                                   context=context, properties=properties)
