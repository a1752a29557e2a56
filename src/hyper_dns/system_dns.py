"""TXT lookups against the system nameserver over UDP."""
import asyncio
from typing import List
from dnslib import DNSRecord, QTYPE
from .config import logger, SYSTEM_DNS


class TxtQueryProtocol(asyncio.DatagramProtocol):
    """UDP protocol handler that sends one DNS query and waits for the reply."""

    def __init__(self, query: bytes, response: asyncio.Future):
        self.query = query
        self.response = response
        self.transport = None

    def connection_made(self, transport):
        """Called when the endpoint is ready; sends the query."""
        self.transport = transport
        transport.sendto(self.query)

    def datagram_received(self, data, addr):
        """Called when a UDP datagram is received."""
        if not self.response.done():
            self.response.set_result(data)

    def error_received(self, exc):
        if not self.response.done():
            self.response.set_exception(exc)

    def connection_lost(self, exc):
        if not self.response.done():
            self.response.set_exception(exc or ConnectionError("DNS endpoint closed before a response arrived"))


async def resolve_txt(name: str, nameserver: str = None, port: int = 53, timeout: float = 5.0) -> List[dict]:
    """
    Query the TXT records of a name directly from a nameserver.

    Args:
        name: The domain name to look up
        nameserver: IP of the DNS server, defaults to the system nameserver
        port: UDP port of the DNS server
        timeout: Seconds to wait for the response

    Returns:
        List of answers shaped like DoH JSON answers: ``{'data': str, 'TTL': int}``

    Raises:
        OSError: If the nameserver could not be reached or did not answer in time
    """
    nameserver = nameserver or SYSTEM_DNS
    query = DNSRecord.question(name, "TXT")
    loop = asyncio.get_running_loop()
    response = loop.create_future()

    logger.debug(f"Resolving TXT of '{name}' via {nameserver}...")
    transport, _ = await loop.create_datagram_endpoint(
        lambda: TxtQueryProtocol(query.pack(), response),
        remote_addr=(nameserver, port)
    )
    try:
        data = await asyncio.wait_for(response, timeout)
    except asyncio.TimeoutError as e:
        raise OSError(f"TXT lookup of {name} via {nameserver} timed out") from e
    finally:
        transport.close()

    parsed = DNSRecord.parse(data)
    answers = []
    for rr in parsed.rr:
        if rr.rtype == QTYPE.TXT:
            text = b''.join(rr.rdata.data).decode('utf-8', errors='replace')
            answers.append({'data': text, 'TTL': rr.ttl})
    logger.debug(f"Resolved {len(answers)} TXT records of {name} via {nameserver}")
    return answers
