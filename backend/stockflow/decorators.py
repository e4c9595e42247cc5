# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services.operator_service import authenticate_token


def require_operator(f):
    """
    Require an authenticated operator.

    Sets g.operator (the Operator row) and g.operator_id from the
    `Authorization: Bearer <token>` header. Returns 401 JSON otherwise; every
    stock write is attributed to this operator and every query is scoped to it.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required", "code": "NOT_AUTHENTICATED"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        operator = authenticate_token(token)

        if operator is None:
            return jsonify({"error": "Invalid or inactive token", "code": "NOT_AUTHENTICATED"}), 401

        g.operator = operator
        g.operator_id = operator.id

        return f(*args, **kwargs)

    return decorated_function
