# Overview: Bearer-token and capability decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .errors import ShopError
from .services import audit_service, auth_service, permission_service


def _is_authenticated() -> bool:
    return getattr(g, "current_principal", None) is not None


def require_auth(f):
    """
    Require a verified bearer token.

    Sets g.current_principal (permission_service.Principal). Admin tokens
    and customer session tokens are both accepted here; capability checks
    decide what each may do.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired or wrongly signed token
    - Admin token still waiting for MFA
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()

        try:
            g.current_principal = auth_service.principal_from_token(token)
        except ShopError as e:
            return jsonify({"error": e.message}), e.status

        return f(*args, **kwargs)

    return decorated_function


def _deny(required):
    principal = g.current_principal
    audit_service.log_action(
        audit_service.PERMISSION_DENIED,
        principal=principal,
        resource_type="endpoint",
        resource_id=request.path,
        details={"method": request.method, "required": required, "role": principal.role},
        commit=True,
    )
    return jsonify({"error": "Permission denied", "required_permission": required}), 403


def require_permission(capability: str):
    """Require one capability; denials are written to the audit log."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_auth was called first
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if not permission_service.has(g.current_principal, capability):
                return _deny(capability)

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_any_permission(*capabilities):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if not permission_service.has_any(g.current_principal, capabilities):
                return _deny(list(capabilities))

            return f(*args, **kwargs)

        return decorated_function
    return decorator
