import os
import logging
from flask import Flask, Response, request
from requests.structures import CaseInsensitiveDict

from chat_core import ROUTE, NormalizedRequest, ResponseWriter, Settings, handle_chat, load_env_file

# Every verb reaches the pipeline so CORS headers and error bodies stay uniform;
# the pipeline itself answers 405 for anything but POST/OPTIONS.
ROUTE_METHODS = ['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS']


class FlaskResponseWriter(ResponseWriter):
    """Collects what the pipeline writes and turns it into a Flask response."""

    def __init__(self):
        self.headers = CaseInsensitiveDict()
        self.body = None

    def set_header(self, name, value):
        self.headers[name] = value

    def get_header(self, name):
        return self.headers.get(name)

    def end(self, body=None):
        self.body = body or ''
        return self

    def to_response(self):
        resp = Response(self.body or '', status=self.status_code, headers=list(self.headers.items()))
        if 'Content-Type' not in self.headers:
            # Flask adds text/html by default; empty replies carry no type
            resp.headers.pop('Content-Type', None)
        return resp


def normalize_request(req):
    return NormalizedRequest(
        method=req.method,
        headers=req.headers,
        body=req.get_data(as_text=True),
    )


def create_app(settings=None):
    if settings is None:
        # Load env from local .env if present
        load_env_file()
        settings = Settings.from_env()

    app = Flask(__name__)
    app.config['CHAT_SETTINGS'] = settings

    @app.route(ROUTE, methods=ROUTE_METHODS)
    def chat():
        writer = FlaskResponseWriter()
        handle_chat(normalize_request(request), writer, settings)
        return writer.to_response()

    return app


app = create_app()

if __name__ == '__main__':
    logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO').upper())
    settings = app.config['CHAT_SETTINGS']
    app.run(host=settings.host, port=settings.port)
