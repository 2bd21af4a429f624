"""Local development server for the chat endpoint.

Runs the same ``handle_chat`` pipeline the deployed Flask app uses, on top of a
plain ``http.server`` socket server. Usage:

  python scripts/dev_server.py --port 3000

ALLOWED_ORIGINS defaults to ``*`` here when unset; the deployed app never does that.
"""
import os
import sys
import logging
import argparse
import dataclasses
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from requests.structures import CaseInsensitiveDict

# Add src to sys.path to import chat_core
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))
from chat_core import (  # noqa: E402
    ROUTE,
    WILDCARD,
    ChatError,
    NormalizedRequest,
    PayloadTooLarge,
    ResponseWriter,
    Settings,
    error_status,
    handle_chat,
    load_env_file,
)

logger = logging.getLogger('dev_server')

CHUNK_BYTES = 64 * 1024
# Statuses that must not carry a body or Content-Length
BODYLESS_STATUSES = (204, 304)


class MalformedBody(ChatError):
    status = 400


# --- request body buffering ---

def _read_exact(rfile, size):
    remaining = size
    while remaining > 0:
        chunk = rfile.read(min(remaining, CHUNK_BYTES))
        if not chunk:
            raise MalformedBody('Request body ended early')
        remaining -= len(chunk)
        yield chunk


def _read_chunked(rfile):
    while True:
        line = rfile.readline(1024)
        try:
            size = int(line.split(b';', 1)[0].strip(), 16)
        except ValueError:
            raise MalformedBody('Malformed chunked body')
        if size < 0:
            raise MalformedBody('Malformed chunked body')
        if size == 0:
            # skip trailers up to the terminating blank line
            while rfile.readline(1024) not in (b'\r\n', b'\n', b''):
                pass
            return
        yield from _read_exact(rfile, size)
        rfile.readline(1024)


def read_request_body(rfile, headers, max_bytes=1_000_000):
    """Buffer the request body, stopping as soon as it passes ``max_bytes``."""
    if 'chunked' in (headers.get('Transfer-Encoding') or '').lower():
        chunks = _read_chunked(rfile)
    else:
        try:
            length = int(headers.get('Content-Length') or 0)
        except ValueError:
            raise MalformedBody('Invalid Content-Length')
        if length < 0:
            raise MalformedBody('Invalid Content-Length')
        chunks = _read_exact(rfile, length)

    total = 0
    parts = []
    for chunk in chunks:
        total += len(chunk)
        if total > max_bytes:
            raise PayloadTooLarge()
        parts.append(chunk)
    return b''.join(parts).decode('utf-8', errors='replace')


# --- response adapter ---

class HandlerResponseWriter(ResponseWriter):
    """Writes pipeline output straight onto a BaseHTTPRequestHandler."""

    def __init__(self, handler):
        self.handler = handler
        self.headers = CaseInsensitiveDict()
        self.started = False
        self.finished = False

    def set_header(self, name, value):
        self.headers[name] = value

    def get_header(self, name):
        return self.headers.get(name)

    def end(self, body=None):
        h = self.handler
        data = (body or '').encode('utf-8')
        self.started = True
        h.send_response(self.status_code)
        for name, value in self.headers.items():
            h.send_header(name, value)
        if self.status_code not in BODYLESS_STATUSES:
            h.send_header('Content-Length', str(len(data)))
        h.end_headers()
        if data and h.command != 'HEAD' and self.status_code not in BODYLESS_STATUSES:
            h.wfile.write(data)
        self.finished = True
        return self

    def plain(self, code, message):
        self.set_header('Content-Type', 'text/plain; charset=utf-8')
        return self.status(code).end(message)


# --- server ---

def with_dev_defaults(settings):
    if not settings.allowed_origins:
        return dataclasses.replace(settings, allowed_origins=(WILDCARD,))
    return settings


def make_handler(settings):
    class ChatRequestHandler(BaseHTTPRequestHandler):
        server_version = 'ChatDevServer/0.1'

        def _dispatch(self):
            writer = HandlerResponseWriter(self)
            try:
                # Only proxy to our handler path
                if not self.path.startswith(ROUTE):
                    writer.plain(404, 'Not Found')
                    return

                try:
                    body = read_request_body(self.rfile, self.headers, settings.max_body_bytes)
                except ChatError as e:
                    status, message = error_status(e)
                    logger.info('Rejected request body (%s): %s', status, message)
                    self.close_connection = True
                    writer.set_header('Connection', 'close')
                    writer.plain(status, message)
                    return

                req = NormalizedRequest(
                    method=self.command,
                    headers=CaseInsensitiveDict(self.headers.items()),
                    body=body,
                )
                handle_chat(req, writer, settings)
            except Exception as e:
                logger.exception('Unhandled error serving %s %s', self.command, self.path)
                self.close_connection = True
                if writer.started:
                    return
                status, message = error_status(e)
                try:
                    fallback = HandlerResponseWriter(self)
                    fallback.set_header('Connection', 'close')
                    fallback.plain(status, message)
                except OSError as write_err:
                    logger.debug('Client went away before error reply: %s', write_err)

        do_GET = do_HEAD = do_POST = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = _dispatch

        def log_message(self, format, *args):  # noqa: A002
            logger.info('%s - %s', self.address_string(), format % args)

    return ChatRequestHandler


def create_server(settings, host=None, port=None):
    address = (settings.host if host is None else host, settings.port if port is None else port)
    return ThreadingHTTPServer(address, make_handler(settings))


def main(argv=None):
    load_env_file()
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    settings = with_dev_defaults(Settings.from_env())

    ap = argparse.ArgumentParser(description='Run the chat endpoint locally')
    ap.add_argument('--host', default=settings.host)
    ap.add_argument('--port', default=settings.port, type=int)
    args = ap.parse_args(argv)

    server = create_server(settings, args.host, args.port)
    bound_port = server.server_address[1]
    logger.info('Local dev server running at http://localhost:%d%s', bound_port, ROUTE)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info('Shutting down')
    finally:
        server.server_close()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
