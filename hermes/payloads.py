"""
UDP probe payloads.

UDP has no handshake, so an empty datagram is usually ignored. Sending
something the service understands makes an open port far more likely to
answer.
"""

from typing import Dict, Tuple

# DNS: standard query for "version.bind" TXT/CH
DNS_QUERY = (
    b"\x12\x34\x01\x00\x00\x01\x00\x00\x00\x00\x00\x00"
    b"\x07version\x04bind\x00\x00\x10\x00\x03"
)

# NTP v3 client request
NTP_REQUEST = b"\x1b" + b"\x00" * 47

# SNMPv1 GetRequest, community "public", sysDescr.0
SNMP_GET = (
    b"\x30\x26\x02\x01\x00\x04\x06public\xa0\x19\x02\x04\x71\x64\xfe\xf1"
    b"\x02\x01\x00\x02\x01\x00\x30\x0b\x30\x09\x06\x05\x2b\x06\x01\x02\x01\x05\x00"
)

# NetBIOS node status request for "*"
NETBIOS_STATUS = (
    b"\x80\xf0\x00\x10\x00\x01\x00\x00\x00\x00\x00\x00"
    b"\x20CKAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA\x00\x00\x21\x00\x01"
)

# TFTP read request for a file that almost certainly does not exist
TFTP_READ = b"\x00\x01hermes.txt\x00octet\x00"

SSDP_SEARCH = (
    b"M-SEARCH * HTTP/1.1\r\n"
    b"HOST: 239.255.255.250:1900\r\n"
    b"MAN: \"ssdp:discover\"\r\n"
    b"MX: 1\r\n"
    b"ST: ssdp:all\r\n\r\n"
)

# mDNS query for _services._dns-sd._udp.local PTR
MDNS_QUERY = (
    b"\x00\x00\x00\x00\x00\x01\x00\x00\x00\x00\x00\x00"
    b"\x09_services\x07_dns-sd\x04_udp\x05local\x00\x00\x0c\x00\x01"
)

# Memcached UDP frame header + "stats"
MEMCACHED_STATS = b"\x00\x01\x00\x00\x00\x01\x00\x00stats\r\n"

# IKE: minimal ISAKMP header (responders usually answer with a notify)
IKE_HEADER = b"\x00" * 8 + b"\x00" * 8 + b"\x01\x10\x02\x00" + b"\x00" * 4 + b"\x00\x00\x00\x1c"

GENERIC = b"\x00" * 4

_PAYLOADS: Dict[Tuple[int, ...], bytes] = {
    (53,): DNS_QUERY,
    (123,): NTP_REQUEST,
    (161, 162): SNMP_GET,
    (137,): NETBIOS_STATUS,
    (69,): TFTP_READ,
    (1900,): SSDP_SEARCH,
    (5353,): MDNS_QUERY,
    (11211,): MEMCACHED_STATS,
    (500, 4500): IKE_HEADER,
}

_BY_PORT: Dict[int, bytes] = {}
for _ports, _payload in _PAYLOADS.items():
    for _port in _ports:
        _BY_PORT[_port] = _payload


def udp_payload(port: int) -> bytes:
    """Returns the probe datagram to send to a UDP port."""
    return _BY_PORT.get(port, GENERIC)
