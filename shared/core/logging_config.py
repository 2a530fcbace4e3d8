"""
Structured logging for the checkout service
One JSON object per line, stamped with the request, correlation and order
ids bound to the current context, plus the payment audit channel.
"""

import logging
import os
import sys
import json
import time
import traceback
from datetime import datetime
from typing import Any, Dict, Optional
from contextvars import ContextVar
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

AUDIT_LOGGER = "checkout.audit"
REDACTED = "***REDACTED***"

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
order_id_var: ContextVar[Optional[str]] = ContextVar('order_id', default=None)

def current_context() -> Dict[str, str]:
    context = {
        "request_id": request_id_var.get(),
        "correlation_id": correlation_id_var.get(),
        "order_id": order_id_var.get(),
    }
    return {k: v for k, v in context.items() if v}

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for settlement logs
    Payment audit records are tagged so they can be routed to their own index
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "@timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'checkout-service'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
        }

        context = current_context()
        if context:
            log_obj["trace"] = context

        log_obj["location"] = {
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, 'extra_fields'):
            log_obj["custom"] = record.extra_fields

        if hasattr(record, 'audit_event'):
            log_obj["audit"] = {"event": record.audit_event}

        return json.dumps(log_obj, default=str)

class SecurityFilter(logging.Filter):
    """Redact credentials and webhook signatures from structured fields"""

    SENSITIVE_FIELDS = (
        'password', 'token', 'api_key', 'secret',
        'authorization', 'cookie', 'transmission-sig', 'transmission_sig', 'signature'
    )

    def filter(self, record: logging.LogRecord) -> bool:
        fields = getattr(record, 'extra_fields', None)
        if isinstance(fields, dict):
            record.extra_fields = self.redact(fields)
        return True

    def redact(self, value):
        if isinstance(value, dict):
            return {
                k: REDACTED if any(s in str(k).lower() for s in self.SENSITIVE_FIELDS) else self.redact(v)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self.redact(v) for v in value]
        return value

def setup_logging(service_name: str, level: str = "INFO") -> None:
    """
    Route every logger through one JSON console handler

    Args:
        service_name: Name reported in every log line
        level: Root log level (DEBUG, INFO, WARNING, ERROR)
    """
    os.environ['SERVICE_NAME'] = service_name

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(SecurityFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = [handler]

    # gateway HTTP chatter and SQL echo stay quiet unless asked for
    for noisy in ('uvicorn.access', 'httpx', 'httpcore', 'sqlalchemy.engine'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'service': service_name, 'level': level}}
    )

class LoggerAdapter(logging.LoggerAdapter):
    """Passes ``extra`` through untouched; context ids are added by the formatter"""

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})
        return msg, kwargs

def get_logger(name: str) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), {})

def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    order_id: Optional[Any] = None
) -> None:
    """
    Bind ids to the current context so every log line carries them

    Args:
        request_id: Unique request identifier
        correlation_id: Caller supplied id for cross-service tracing
        order_id: Order being settled, refunded or reconciled
    """
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if order_id is not None:
        order_id_var.set(str(order_id))

def generate_request_id() -> str:
    return str(uuid.uuid4())

_audit_logger = logging.getLogger(AUDIT_LOGGER)

def log_payment_event(event: str, level: int = logging.INFO, **fields) -> None:
    """
    Write one payment audit record (captures, refunds, webhook verdicts)

    Args:
        event: Short event name, e.g. ``payment_captured``
        level: Log level for the record
        **fields: Event details; credentials are redacted by SecurityFilter
    """
    if fields.get('order_id') is not None:
        set_request_context(order_id=fields['order_id'])
    _audit_logger.log(
        level,
        f"Payment event: {event}",
        extra={'audit_event': event, 'extra_fields': fields}
    )

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs each request with its duration and echoes X-Request-ID
    The order id is reset per request so it never leaks between requests
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(
            request_id=request_id,
            correlation_id=request.headers.get('X-Correlation-ID')
        )
        order_id_var.set(None)

        logger = get_logger(__name__)
        request_fields = {'method': request.method, 'path': request.url.path}
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={'extra_fields': {**request_fields, 'duration_ms': (time.time() - start_time) * 1000}}
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={'extra_fields': {
                **request_fields,
                'status_code': response.status_code,
                'duration_ms': (time.time() - start_time) * 1000
            }}
        )
        response.headers['X-Request-ID'] = request_id
        return response
