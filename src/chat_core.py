import os
import re
import json
import logging
from dataclasses import dataclass
from typing import Optional

import requests
from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

ROUTE = '/api/chat'
DEFAULT_SYSTEM_PROMPT = 'You are a helpful and concise assistant.'
DEFAULT_MODEL = 'gpt-4o-mini'
DEFAULT_BASE_URL = 'https://api.openai.com/v1'
TEMPERATURE = 0.7
MAX_TEXT_CHARS = 8000
MOCK_PREVIEW_CHARS = 180
WILDCARD = '*'


# --- simple .env loader (no external deps) ---
def load_env_file(path='.env'):
    try:
        if not os.path.exists(path):
            return
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                s = line.strip()
                if not s or s.startswith('#'):
                    continue
                if '=' not in s:
                    continue
                k, v = s.split('=', 1)
                k = k.strip()
                v = v.strip().strip('"').strip("'")
                if k and (k not in os.environ or not os.environ.get(k)):
                    os.environ[k] = v
    except OSError as e:
        # an unreadable .env must not block the server
        logger.warning('Could not read %s: %s', path, e)


# --- configuration ---

def parse_allowed_origins(value):
    return tuple(o.strip() for o in (value or '').split(',') if o.strip())


def _env_number(environ, name, cast, default):
    raw = (environ.get(name) or '').strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning('Ignoring invalid %s=%r', name, raw)
        return default


@dataclass(frozen=True)
class Settings:
    """Process configuration, read once at startup and never mutated."""

    allowed_origins: tuple = ()
    openai_api_key: str = ''
    allow_mock: bool = False
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    upstream_timeout: Optional[float] = None
    host: str = '127.0.0.1'
    port: int = 3000
    max_body_bytes: int = 1_000_000

    @property
    def has_credential(self):
        return bool(self.openai_api_key)

    def __repr__(self):
        # never print the credential
        return (f'Settings(allowed_origins={self.allowed_origins!r}, '
                f'has_credential={self.has_credential}, allow_mock={self.allow_mock}, '
                f'model={self.model!r}, base_url={self.base_url!r})')

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ
        return cls(
            allowed_origins=parse_allowed_origins(env.get('ALLOWED_ORIGINS')),
            openai_api_key=(env.get('OPENAI_API_KEY') or '').strip(),
            allow_mock=env.get('DEV_ALLOW_MOCK') == '1',
            system_prompt=(env.get('SYSTEM_PROMPT') or DEFAULT_SYSTEM_PROMPT).strip(),
            model=(env.get('OPENAI_MODEL') or DEFAULT_MODEL).strip(),
            base_url=(env.get('OPENAI_BASE_URL') or DEFAULT_BASE_URL).strip().rstrip('/'),
            upstream_timeout=_env_number(env, 'OPENAI_TIMEOUT', float, None),
            host=(env.get('HOST') or '127.0.0.1').strip(),
            port=_env_number(env, 'PORT', int, 3000),
            max_body_bytes=_env_number(env, 'MAX_BODY_BYTES', int, 1_000_000),
        )


# --- errors ---

class ChatError(Exception):
    status = 500

    def __init__(self, message, status=None):
        super().__init__(message)
        if status is not None:
            self.status = status


class ConfigurationError(ChatError):
    status = 500


class OriginNotAllowed(ChatError):
    status = 403

    def __init__(self, message='Origin not allowed'):
        super().__init__(message)


class MethodNotAllowed(ChatError):
    status = 405

    def __init__(self, message='Method not allowed'):
        super().__init__(message)


class ValidationError(ChatError):
    status = 400


class PayloadTooLarge(ChatError):
    status = 413

    def __init__(self, message='Payload too large'):
        super().__init__(message)


class UpstreamError(ChatError):
    pass


def error_status(err):
    """Map any exception to an (HTTP status, message) pair."""
    status = getattr(err, 'status', None)
    if isinstance(status, bool) or not isinstance(status, int) or not 400 <= status <= 599:
        status = 500
    message = str(err) or 'Unknown error'
    return status, message


# --- request / response contract ---

@dataclass
class NormalizedRequest:
    method: str
    headers: CaseInsensitiveDict
    body: str = ''


class ResponseWriter:
    """The set_header/status/json/end contract the pipeline writes to.

    Subclasses store headers and implement ``end``; ``status`` and ``json``
    are shared so both environments behave the same.
    """

    status_code = 200

    def set_header(self, name, value):
        raise NotImplementedError

    def get_header(self, name):
        raise NotImplementedError

    def status(self, code):
        self.status_code = code
        return self

    def json(self, obj):
        if not self.get_header('Content-Type'):
            self.set_header('Content-Type', 'application/json')
        return self.end(json.dumps(obj))

    def end(self, body=None):
        raise NotImplementedError


# --- origin policy ---

def is_origin_allowed(origin, allowed):
    if WILDCARD in allowed:
        return True
    if not origin:
        return False
    return origin in allowed


def apply_cors_headers(origin, allowed, res):
    if WILDCARD in allowed:
        res.set_header('Access-Control-Allow-Origin', WILDCARD)
    elif origin and is_origin_allowed(origin, allowed):
        res.set_header('Access-Control-Allow-Origin', origin)
    res.set_header('Vary', 'Origin')
    res.set_header('Access-Control-Allow-Methods', 'POST, OPTIONS')
    res.set_header('Access-Control-Allow-Headers', 'Content-Type')
    res.set_header('Access-Control-Max-Age', '86400')


# --- body decoding and validation ---

def _json_text(raw_body):
    try:
        body = json.loads(raw_body or '')
    except ValueError:
        return ''
    if isinstance(body, dict) and isinstance(body.get('text'), str):
        return body['text']
    return ''


def decode_text(content_type, raw_body):
    content_type = (content_type or '').lower()
    if content_type.startswith('text/plain'):
        text = raw_body if isinstance(raw_body, str) else ''
    else:
        # application/json and unknown types both get a best-effort parse
        text = _json_text(raw_body)
    return text.strip()


def validate_text(text):
    if not text:
        raise ValidationError('Invalid request: text is required', 400)
    if len(text) > MAX_TEXT_CHARS:
        raise ValidationError(f'Payload too large: text exceeds {MAX_TEXT_CHARS} characters', 413)
    return text


# --- completion ---

def build_messages(system_prompt, text):
    return [
        { 'role': 'system', 'content': system_prompt },
        { 'role': 'user', 'content': text }
    ]


def mock_reply(text):
    preview = re.sub(r'\s+', ' ', text[:MOCK_PREVIEW_CHARS]).strip()
    marker = '…' if len(text) > MOCK_PREVIEW_CHARS else ''
    return f'Mocked response (DEV_ALLOW_MOCK=1). You said: "{preview}{marker}"'


class MockCompletion:
    kind = 'mock'

    def complete(self, text):
        return mock_reply(text)


class LiveCompletion:
    kind = 'live'

    def __init__(self, settings):
        self.settings = settings

    def complete(self, text):
        s = self.settings
        body = {
            'model': s.model,
            'messages': build_messages(s.system_prompt, text),
            'temperature': TEMPERATURE,
        }
        r = requests.post(f'{s.base_url}/chat/completions', json=body, headers={
            'Authorization': f'Bearer {s.openai_api_key}',
            'Content-Type': 'application/json'
        }, timeout=s.upstream_timeout)
        if r.status_code >= 400:
            raise UpstreamError(_upstream_message(r), r.status_code)
        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise UpstreamError('Invalid response from OpenAI', 502)
        choices = data.get('choices')
        choice = choices[0] if isinstance(choices, list) and choices else None
        message = choice.get('message') if isinstance(choice, dict) else None
        content = message.get('content') if isinstance(message, dict) else None
        return content if isinstance(content, str) else ''


def _upstream_message(r):
    try:
        err = (r.json() or {}).get('error') or {}
    except ValueError:
        err = {}
    if isinstance(err, dict) and err.get('message'):
        return f"{r.status_code} {err['message']}"
    return f'OpenAI HTTP {r.status_code}'


def select_completion(settings):
    if settings.has_credential:
        return LiveCompletion(settings)
    if settings.allow_mock:
        return MockCompletion()
    raise ConfigurationError('Server misconfiguration: OPENAI_API_KEY is not set')


def check_configuration(origin, settings):
    """Run the operator/origin checks in order and pick the completion path."""
    if not settings.allowed_origins:
        raise ConfigurationError('Server misconfiguration: ALLOWED_ORIGINS is not set')
    if not is_origin_allowed(origin, settings.allowed_origins):
        raise OriginNotAllowed()
    return select_completion(settings)


# --- pipeline ---

def handle_chat(req, res, settings):
    origin = req.headers.get('Origin')
    apply_cors_headers(origin, settings.allowed_origins, res)

    if req.method == 'OPTIONS':
        res.status(204).end()
        return

    try:
        completion = check_configuration(origin, settings)
        if req.method != 'POST':
            res.set_header('Allow', 'POST, OPTIONS')
            raise MethodNotAllowed()
        text = validate_text(decode_text(req.headers.get('Content-Type'), req.body))
        content = completion.complete(text)
    except Exception as e:
        status, message = error_status(e)
        if status >= 500:
            logger.warning('Chat request failed (%s): %s', status, message)
        else:
            logger.info('Chat request rejected (%s): %s', status, message)
        res.status(status).json({ 'error': message })
        return

    logger.debug('Chat reply via %s path (%d chars in)', completion.kind, len(text))
    res.set_header('Content-Type', 'application/json')
    res.set_header('Cache-Control', 'no-store')
    res.status(200).json({ 'content': content })
