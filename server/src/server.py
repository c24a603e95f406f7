import os
import sys
import logging
from pathlib import Path
from functools import wraps
from dataclasses import dataclass

from flask import Flask, jsonify, request, g, current_app
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from pythonjsonlogger.json import JsonFormatter
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from access_errors import AccessError, GrantExpired, GrantNotFound
from access_grants import AccessGrantStore, utcnow
from access_issuer import AccessIssuer
from access_validator import AccessValidator
from commerce import CommerceGateway
from file_store import FileStore
from fingerprint import UNKNOWN, RequestIdentity, identify, request_metadata
from rendering_pipeline import RenderingPipeline
from watermark_compositor import WatermarkCompositor, WatermarkOptions

logger = logging.getLogger(__name__)

SESSION_SALT = "ebook-auth"

# Headers for every PDF the reader is allowed to see but should not keep
READ_HEADERS = {
    "Content-Disposition": 'inline; filename="ebook.pdf"',
    "Cache-Control": "no-store, no-cache, must-revalidate, private, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Content-Security-Policy": "frame-ancestors 'self'",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
}


def configure_logging(log_path: str | None = None) -> None:
    """JSON logs to stdout (docker picks these up), plus a file when LOG_PATH is set."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    formatter = JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    if not any(h.get_name() == "json-stdout" for h in root.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.set_name("json-stdout")
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    if log_path and not any(h.get_name() == "json-file" for h in root.handlers):
        os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.set_name("json-file")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _db_url_from_cfg(cfg) -> str:
    return (
        f"mysql+pymysql://{cfg['DB_USER']}:{cfg['DB_PASSWORD']}"
        f"@{cfg['DB_HOST']}:{cfg['DB_PORT']}/{cfg['DB_NAME']}?charset=utf8mb4"
    )


def get_engine():
    app = current_app
    eng = app.config.get("_ENGINE")
    if eng is None:
        eng = create_engine(_db_url_from_cfg(app.config), pool_pre_ping=True, future=True)
        app.config["_ENGINE"] = eng
    return eng


def _serializer(app):
    return URLSafeTimedSerializer(app.config["SECRET_KEY"], salt=SESSION_SALT)


def make_session_token(app, uid: int, role: str = "customer") -> str:
    """Session token as minted by the auth service: {"uid", "role"} signed with SECRET_KEY."""
    return _serializer(app).dumps({"uid": int(uid), "role": role})


@dataclass
class Services:
    store: AccessGrantStore
    commerce: CommerceGateway
    issuer: AccessIssuer
    validator: AccessValidator
    pipeline: RenderingPipeline


def build_services(cfg, engine) -> Services:
    """Fresh service graph for one request; only the engine is shared."""
    store = AccessGrantStore(engine)
    commerce = CommerceGateway(engine)
    validator = AccessValidator(
        store,
        allow_origin_growth=cfg["EBOOK_ALLOW_ORIGIN_GROWTH"],
        allow_device_growth=cfg["EBOOK_ALLOW_DEVICE_GROWTH"],
    )
    pipeline = RenderingPipeline(
        validator,
        WatermarkCompositor(WatermarkOptions.from_config(cfg)),
        FileStore.for_storage_dir(cfg["STORAGE_DIR"]),
        commerce,
        footer=cfg["EBOOK_WATERMARK_FOOTER"],
    )
    issuer = AccessIssuer(store, commerce, validity_days=cfg["EBOOK_TOKEN_VALIDITY_DAYS"])
    return Services(store, commerce, issuer, validator, pipeline)


def create_app():
    app = Flask(__name__)

    # --- Config ---
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "change-me-outside-of-development")
    app.config["TOKEN_TTL_SECONDS"] = int(os.environ.get("TOKEN_TTL_SECONDS", "86400"))
    app.config["STORAGE_DIR"] = Path(os.environ.get("STORAGE_DIR", "./storage")).resolve()

    app.config["DB_USER"] = os.environ.get("DB_USER", "ebooks")
    app.config["DB_PASSWORD"] = os.environ.get("DB_PASSWORD", "ebooks")
    app.config["DB_HOST"] = os.environ.get("DB_HOST", "db")
    app.config["DB_PORT"] = int(os.environ.get("DB_PORT", "3306"))
    app.config["DB_NAME"] = os.environ.get("DB_NAME", "ebooks")

    app.config["EBOOK_TOKEN_VALIDITY_DAYS"] = int(os.environ.get("EBOOK_TOKEN_VALIDITY_DAYS", "365"))
    app.config["EBOOK_ALLOW_ORIGIN_GROWTH"] = _env_flag("EBOOK_ALLOW_ORIGIN_GROWTH", True)
    app.config["EBOOK_ALLOW_DEVICE_GROWTH"] = _env_flag("EBOOK_ALLOW_DEVICE_GROWTH", True)
    app.config["EBOOK_WATERMARK_FONT_SIZE"] = float(os.environ.get("EBOOK_WATERMARK_FONT_SIZE", "12"))
    app.config["EBOOK_WATERMARK_OPACITY"] = float(os.environ.get("EBOOK_WATERMARK_OPACITY", "0.3"))
    app.config["EBOOK_WATERMARK_ANGLE"] = float(os.environ.get("EBOOK_WATERMARK_ANGLE", "-45"))
    app.config["EBOOK_WATERMARK_SPACING"] = float(os.environ.get("EBOOK_WATERMARK_SPACING", "200"))
    app.config["EBOOK_WATERMARK_FOOTER"] = _env_flag("EBOOK_WATERMARK_FOOTER", False)
    app.config["FRONTEND_URL"] = os.environ.get("FRONTEND_URL", "http://localhost:3000").rstrip("/")

    app.config["RATELIMIT_ENABLED"] = _env_flag("RATELIMIT_ENABLED", True)

    (app.config["STORAGE_DIR"] / "ebooks").mkdir(parents=True, exist_ok=True)
    configure_logging(os.environ.get("LOG_PATH"))

    # baseline for the whole app, per IP
    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=["1000 per day", "200 per hour"],
        storage_uri=os.environ.get("RATELIMIT_STORAGE_URI", "memory://"),
    )
    # flask-limiter only holds a weak reference; the app must own the limiter
    app.extensions["ebook_limiter"] = limiter

    # --- Helpers ---
    def _auth_error(msg: str, code: int = 401):
        return jsonify({"error": msg}), code

    def require_auth(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer "):
                return _auth_error("Missing or invalid Authorization header")
            token = auth.split(" ", 1)[1].strip()
            try:
                data = _serializer(app).loads(token, max_age=app.config["TOKEN_TTL_SECONDS"])
            except SignatureExpired:
                return _auth_error("Token expired")
            except BadSignature:
                return _auth_error("Invalid token")
            g.user = {"id": int(data["uid"]), "role": data.get("role", "customer")}
            return f(*args, **kwargs)
        return wrapper

    def require_role(*roles):
        def decorator(f):
            @wraps(f)
            @require_auth
            def wrapper(*args, **kwargs):
                if g.user["role"] not in roles:
                    return _auth_error("insufficient role", 403)
                return f(*args, **kwargs)
            return wrapper
        return decorator

    def services() -> Services:
        return build_services(app.config, get_engine())

    def pdf_response(pdf: bytes):
        resp = app.response_class(pdf, mimetype="application/pdf")
        resp.headers.update(READ_HEADERS)
        return resp

    def access_json(grant, product=None) -> dict:
        out = grant.to_json()
        out["access_token"] = grant.access_token
        if product is not None:
            out["product"] = {"id": product.id, "title": product.title}
        return out

    def owned_grant(svc: Services, product_id: int):
        grant = svc.store.find_active_for(g.user["id"], product_id)
        if grant is None:
            raise GrantNotFound(f"no active grant for product {product_id}")
        return grant

    # --- Routes ---

    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        try:
            with get_engine().connect() as conn:
                conn.execute(text("SELECT 1"))
            db_ok = True
        except SQLAlchemyError:
            db_ok = False
        return jsonify({"message": "The server is up and running.", "db_connected": db_ok}), 200

    # POST /api/orders/<order_id>/ebook-grants  (payment callback / order service)
    @app.post("/api/orders/<int:order_id>/ebook-grants")
    @require_role("admin", "service")
    def issue_order_grants(order_id: int):
        # The caller is a backend, not the buyer. The buyer's identity is used
        # only if the order service captured it at checkout.
        body = request.get_json(silent=True) or {}
        buyer = RequestIdentity(
            origin=str(body.get("origin") or UNKNOWN),
            device=str(body.get("device") or UNKNOWN),
        )
        report = services().issuer.issue_for_order(order_id, buyer)
        return jsonify(report.to_json()), 207 if report.failed else 201

    # GET /api/ebooks  → caller's grants, newest first
    @app.get("/api/ebooks")
    @require_auth
    def list_ebooks():
        svc = services()
        grants = svc.store.list_for_user(g.user["id"])
        out = []
        for grant in grants:
            out.append(access_json(grant, svc.commerce.find_product(grant.product_id)))
        return jsonify({"ebooks": out}), 200

    @app.get("/api/ebooks/<int:product_id>/access")
    @require_auth
    def ebook_access(product_id: int):
        svc = services()
        grant = owned_grant(svc, product_id)
        if grant.is_expired(utcnow()):
            raise GrantExpired(f"grant {grant.id} expired")
        return jsonify(access_json(grant, svc.commerce.find_product(product_id))), 200

    @app.get("/api/ebooks/<int:product_id>/viewer")
    @require_auth
    def ebook_viewer(product_id: int):
        grant = owned_grant(services(), product_id)
        return jsonify({
            "viewer_url": f"{app.config['FRONTEND_URL']}/ebook/viewer?token={grant.access_token}",
            "access_token": grant.access_token,
            "token_expiry": grant.token_expiry.isoformat(),
        }), 200

    @app.post("/api/ebooks/<int:product_id>/rotate")
    @require_auth
    def rotate_ebook_token(product_id: int):
        svc = services()
        grant = owned_grant(svc, product_id)
        rotated = svc.issuer.rotate(grant.id, g.user["id"])
        return jsonify(access_json(rotated)), 200

    # GET /api/ebooks/view?token=...  → watermarked PDF (inline)
    @app.get("/api/ebooks/view")
    @limiter.limit("30 per minute", key_func=get_remote_address)
    def view_ebook():
        token = request.args.get("token") or request.headers.get("X-Access-Token")
        if not token:
            return jsonify({"error": "access token is required"}), 401
        who = identify(request_metadata())
        pdf = services().pipeline.render(token.strip(), who.origin, who.device)
        return pdf_response(pdf)

    @app.delete("/api/ebooks/<token_or_id>")
    @require_auth
    def revoke_ebook(token_or_id: str):
        revoked = services().issuer.revoke(
            token_or_id, g.user["id"], is_admin=g.user["role"] == "admin"
        )
        return jsonify({"revoked": True, "access": revoked.to_json()}), 200

    @app.get("/api/admin/ebooks/<int:product_id>/preview")
    @require_role("admin")
    def admin_preview(product_id: int):
        pdf = services().pipeline.render_preview(product_id, g.user["id"])
        return pdf_response(pdf)

    # --- Error handlers ---

    @app.errorhandler(AccessError)
    def access_error_handler(e: AccessError):
        return jsonify({"error": e.public_message}), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def database_error_handler(e):
        logger.error({
            "event": "database_error",
            "path": request.path,
            "error": str(getattr(e, "orig", None) or type(e).__name__),
        })
        return jsonify({"error": "database error"}), 503

    @app.errorhandler(429)
    def ratelimit_handler(e):
        return jsonify(error="rate_limited", detail=str(e.description)), 429

    return app


# WSGI entrypoint
app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
