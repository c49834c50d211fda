import asyncio
import logging
import os
import ssl
import struct
from logging.handlers import TimedRotatingFileHandler
from typing import Optional, Set, Tuple

from sinkholed.core.blocklist import Blocklist
from sinkholed.core.resolver import DoHResolver
from sinkholed.core.wire import NULL_ADDRESS, WireFormatError, encode_response, parse_question
from sinkholed.utils.ListUpdater import periodic_refresh


logger = logging.getLogger("sinkholed.dserver")

FRAMING_RAW = 'raw'
FRAMING_RFC7858 = 'rfc7858'
DOT_FRAMINGS = (FRAMING_RAW, FRAMING_RFC7858)

DOT_READ_SIZE = 65535

STATUS_BLOCKED = 'Blocked'
STATUS_RESOLVED = 'Resolved'
STATUS_PASSTHROUGH = 'Passthrough'


def make_query_logger(log_dir: str, retention_days: int = 7) -> logging.Logger:
    """Return a logger writing one line per query to <log_dir>/dns-requests.log."""
    os.makedirs(log_dir, exist_ok=True)
    flog = logging.getLogger("sinkholed.DNSRequests")
    flog.setLevel(logging.INFO)
    flog.propagate = False
    if not any(isinstance(h, TimedRotatingFileHandler) for h in flog.handlers):
        fh = TimedRotatingFileHandler(os.path.join(log_dir, 'dns-requests.log'), when='midnight',
                                      backupCount=retention_days)
        fh.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        flog.addHandler(fh)
    return flog


def make_tls_context(certfile: str, keyfile: str) -> ssl.SSLContext:
    """Server-side TLS context; client certificates are neither requested nor checked."""
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.verify_mode = ssl.CERT_NONE
    ctx.load_cert_chain(certfile, keyfile)
    return ctx


def _format_peer(peer) -> Optional[str]:
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer) if peer else None


class QueryHandler:
    """Per-message pipeline shared by the UDP and DoT listeners.

    handle() returns the bytes to send back: a synthesized answer for blocked
    or resolved names, otherwise the query itself unchanged. It does not
    raise, except when the calling task is cancelled.
    """

    def __init__(self, blocklist: Blocklist, resolver, query_logger: Optional[logging.Logger] = None):
        self.blocklist = blocklist
        self.resolver = resolver
        self.query_logger = query_logger

    def log_dns_event(self, status: str, qname: Optional[str], client: Optional[str] = None, details: Optional[str] = None):
        msg = f"{status}\tqname={qname}\tclient={client}\t{details or ''}"
        if status == STATUS_BLOCKED:
            logger.info(msg)
        else:
            logger.debug(msg)
        if self.query_logger:
            self.query_logger.info(msg)

    async def handle(self, data: bytes, client: Optional[str] = None) -> bytes:
        try:
            return await self._process(data, client)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error processing DNS message from %s", client)
            self.log_dns_event(STATUS_PASSTHROUGH, None, client, 'processing error')
            return data

    async def _process(self, data: bytes, client: Optional[str]) -> bytes:
        question = parse_question(data)
        if question is None:
            self.log_dns_event(STATUS_PASSTHROUGH, None, client, 'malformed question')
            return data
        qname = question.name

        if self.blocklist.is_blocked(qname):
            self.log_dns_event(STATUS_BLOCKED, qname, client, f"answer={NULL_ADDRESS}")
            try:
                return encode_response(data, NULL_ADDRESS)
            except WireFormatError as e:
                self.log_dns_event(STATUS_PASSTHROUGH, qname, client, str(e))
                return data

        addresses = await self.resolver.resolve(qname)
        if not addresses:
            self.log_dns_event(STATUS_PASSTHROUGH, qname, client, 'no upstream answer')
            return data
        try:
            response = encode_response(data, addresses[0])
        except WireFormatError as e:
            self.log_dns_event(STATUS_PASSTHROUGH, qname, client, str(e))
            return data
        self.log_dns_event(STATUS_RESOLVED, qname, client, f"answer={addresses[0]}")
        return response


class UDPResolverProtocol(asyncio.DatagramProtocol):
    def __init__(self, handler: QueryHandler):
        self.handler = handler
        self.transport = None
        self._tasks: Set[asyncio.Task] = set()

    def connection_made(self, transport):
        self.transport = transport
        logger.debug("UDP listener started")

    def datagram_received(self, data, addr):
        logger.debug(f"Received UDP DNS query from {addr}")
        task = asyncio.create_task(self._handle(data, addr))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def error_received(self, exc):
        logger.warning(f"UDP listener error: {exc}")

    def connection_lost(self, exc):
        for task in list(self._tasks):
            task.cancel()

    async def _handle(self, data: bytes, addr):
        response = await self.handler.handle(data, _format_peer(addr))
        if self.transport is None or self.transport.is_closing():
            return
        try:
            self.transport.sendto(response, addr)
            logger.debug(f"Sent UDP DNS response to {addr}")
        except OSError as e:
            logger.error(f"Error sending UDP DNS response to {addr}: {e}")


class DoTConnectionHandler:
    """asyncio.start_server callback for DNS-over-TLS connections.

    With raw framing every chunk read from the stream is taken as one whole
    DNS message and answered unframed. With rfc7858 framing messages carry
    the 2-byte length prefix in both directions.

    Messages of one connection are processed concurrently, so responses may
    be written in a different order than the queries arrived.
    """

    def __init__(self, handler: QueryHandler, framing: str = FRAMING_RAW):
        if framing not in DOT_FRAMINGS:
            raise ValueError(f"unsupported DoT framing: {framing}")
        self.handler = handler
        self.framing = framing
        self._writers: Set[asyncio.StreamWriter] = set()

    def close_connections(self):
        for writer in list(self._writers):
            writer.close()

    async def _read_message(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        """Next message from the stream, or None at end of stream."""
        if self.framing == FRAMING_RAW:
            return await reader.read(DOT_READ_SIZE) or None
        try:
            length_bytes = await reader.readexactly(2)
        except asyncio.IncompleteReadError as e:
            if e.partial:
                raise
            return None
        length = struct.unpack('>H', length_bytes)[0]
        return await reader.readexactly(length)

    def _frame(self, message: bytes) -> bytes:
        if self.framing == FRAMING_RAW:
            return message
        return struct.pack('>H', len(message)) + message

    async def _respond(self, data: bytes, client: Optional[str], writer: asyncio.StreamWriter, write_lock: asyncio.Lock):
        response = await self.handler.handle(data, client)
        if writer.is_closing():
            return
        try:
            async with write_lock:
                writer.write(self._frame(response))
                await writer.drain()
            logger.debug(f"Sent DoT DNS response to {client}")
        except (ConnectionError, ssl.SSLError) as e:
            logger.debug(f"Could not write DoT response to {client}: {e}")

    async def __call__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        client = _format_peer(writer.get_extra_info('peername'))
        logger.debug(f"DoT client connected: {client}")
        write_lock = asyncio.Lock()
        pending: Set[asyncio.Task] = set()
        self._writers.add(writer)
        try:
            while True:
                data = await self._read_message(reader)
                if data is None:
                    break
                if not data:
                    continue
                task = asyncio.create_task(self._respond(data, client, writer, write_lock))
                pending.add(task)
                task.add_done_callback(pending.discard)
            if pending:
                await asyncio.gather(*pending)
            logger.debug(f"DoT client disconnected: {client}")
        except asyncio.IncompleteReadError:
            logger.debug(f"DoT client {client} closed mid-message")
        except (ConnectionError, ssl.SSLError) as e:
            logger.warning(f"DoT connection error from {client}: {e}")
        finally:
            self._writers.discard(writer)
            for task in list(pending):
                task.cancel()
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, ssl.SSLError):
                pass


class DNSServer:
    """UDP listener plus optional DoT listener around one QueryHandler."""

    def __init__(self,
                 handler: QueryHandler,
                 listen_ip: str = '0.0.0.0',
                 listen_port: int = 53,
                 dot_port: Optional[int] = 853,
                 ssl_context: Optional[ssl.SSLContext] = None,
                 dot_framing: str = FRAMING_RAW):
        self.handler = handler
        self.listen_ip = listen_ip
        self.listen_port = listen_port
        self.dot_port = dot_port
        self.ssl_context = ssl_context
        self.dot_framing = dot_framing
        self.udp_transport = None
        self.dot_server = None
        self._dot_handler = None

    @property
    def udp_address(self) -> Optional[Tuple[str, int]]:
        if self.udp_transport is None:
            return None
        return self.udp_transport.get_extra_info('sockname')[:2]

    @property
    def dot_address(self) -> Optional[Tuple[str, int]]:
        if self.dot_server is None or not self.dot_server.sockets:
            return None
        return self.dot_server.sockets[0].getsockname()[:2]

    async def start(self):
        loop = asyncio.get_running_loop()
        self.udp_transport, _ = await loop.create_datagram_endpoint(
            lambda: UDPResolverProtocol(self.handler),
            local_addr=(self.listen_ip, self.listen_port)
        )
        logger.info("DNS UDP listener running on %s:%s", *self.udp_address)

        if self.dot_port is not None and self.ssl_context is not None:
            self._dot_handler = DoTConnectionHandler(self.handler, self.dot_framing)
            try:
                self.dot_server = await asyncio.start_server(
                    self._dot_handler,
                    self.listen_ip, self.dot_port, ssl=self.ssl_context
                )
            except OSError:
                self.udp_transport.close()
                self.udp_transport = None
                raise
            logger.info("DNS-over-TLS listener running on %s:%s (framing=%s)",
                        *self.dot_address, self.dot_framing)

    async def close(self):
        if self.udp_transport is not None:
            self.udp_transport.close()
            self.udp_transport = None
        if self.dot_server is not None:
            self.dot_server.close()
            # open DoT connections would otherwise keep wait_closed() waiting
            self._dot_handler.close_connections()
            await self.dot_server.wait_closed()
            self.dot_server = None


async def run_server(config: dict, blocklist: Blocklist, resolver=None):
    """Serve UDP and DoT until cancelled.

    Bind errors and certificate errors propagate to the caller.
    """
    own_resolver = resolver is None
    if resolver is None:
        resolver = DoHResolver(
            endpoint=config['doh_endpoint'],
            timeout=config.get('upstream_doh_timeout', 5.0),
            retries=config.get('upstream_retries', 2),
            initial_backoff=config.get('upstream_initial_backoff', 0.1),
            cache_ttl=config.get('dns_cache_ttl', 300),
            cache_max_size=config.get('dns_cache_max_size', 1024),
        )

    query_logger = None
    if config.get('dns_logging_enabled'):
        try:
            query_logger = make_query_logger(config['dns_log_dir'], config.get('dns_log_retention_days', 7))
        except OSError as e:
            logger.warning("Failed to init query log file: %s", e)

    ssl_context = None
    if config.get('dot_enabled', True):
        ssl_context = make_tls_context(config['dot_certfile'], config['dot_keyfile'])

    server = DNSServer(
        QueryHandler(blocklist, resolver, query_logger),
        listen_ip=config['listen_ip'],
        listen_port=config['listen_port'],
        dot_port=config.get('dot_listen_port', 853) if ssl_context is not None else None,
        ssl_context=ssl_context,
        dot_framing=config.get('dot_framing', FRAMING_RAW),
    )

    refresh_task = None
    try:
        await server.start()

        block_cfg = config.get('blocklists') or {}
        interval = block_cfg.get('interval_seconds', 0)
        if interval and interval > 0 and (block_cfg.get('file') or block_cfg.get('urls')):
            refresh_task = asyncio.create_task(
                periodic_refresh(blocklist, block_cfg.get('file'), block_cfg.get('urls', []), interval))
            logger.info("Blocklist refresh every %ss", interval)

        await asyncio.get_running_loop().create_future()
    finally:
        if refresh_task is not None:
            refresh_task.cancel()
        await server.close()
        if own_resolver:
            await resolver.close()
