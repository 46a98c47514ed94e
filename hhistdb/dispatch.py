#
# Serving side of a client/collector exchange
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#
# A transport receives a message, decodes it into a Request and passes it to
# handle_request(); whatever bytes come back are sent to the client as the
# reply. Framing and encryption are the transport's business.
#

import logging

from .errors import ValidationError
from .query import QueryParams

logger = logging.getLogger(__name__)

REQUEST_HISTORY = "history"
REQUEST_QUERY = "query"
REQUEST_KINDS = (REQUEST_HISTORY, REQUEST_QUERY)


class Request:
    def __init__(self, kind, user="", host="", payload=b"", params=None):
        if kind not in REQUEST_KINDS:
            raise ValidationError(f"Unknown request kind {kind!r}")
        if kind == REQUEST_QUERY and not isinstance(params, QueryParams):
            raise ValidationError("A query request needs query parameters")
        if isinstance(payload, str):
            payload = payload.encode('utf-8')
        self.kind = kind
        self.user = user
        self.host = host
        self.payload = payload
        self.params = params

    def to_dict(self):
        return {
            'kind': self.kind,
            'user': self.user,
            'host': self.host,
            'payload': self.payload.decode('utf-8', errors='replace'),
            'params': self.params.to_dict() if self.params is not None else None
        }

    @classmethod
    def from_dict(cls, data):
        """Build a request from its decoded form, validating every field"""
        if not isinstance(data, dict):
            raise ValidationError("A request must be a mapping")
        params = data.get('params')
        if params is not None:
            params = QueryParams.from_dict(params)
        for key in ('user', 'host', 'payload'):
            if not isinstance(data.get(key, ""), (str, bytes)):
                raise ValidationError(f"Request field {key} must be text")
        return cls(data.get('kind'), data.get('user', ""), data.get('host', ""),
                   data.get('payload', b""), params)


def handle_request(store, request, remote_ip=None):
    """Run one request against the store and return the reply payload"""
    if remote_ip:
        store.log_connection(remote_ip)

    if request.kind == REQUEST_HISTORY:
        lines = request.payload.decode('utf-8', errors='replace').splitlines()
        summary = store.ingest(lines, request.user, request.host)
        logger.info(f"History from {request.user}@{request.host}: {summary}")
        return summary.encode('utf-8')

    if request.kind == REQUEST_QUERY:
        return store.query(request.params)

    raise ValidationError(f"Unknown request kind {request.kind!r}")
