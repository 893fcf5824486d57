from __future__ import annotations

import json
import logging
import os
from typing import Any

import click
from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS

from actions import dispatch
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from config import Config
from db import Base, SessionLocal, init_engine
from models import AuditLog
from utils import ApiError, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok, parse_json_body, redact_for_audit


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _audit_row(action: str, auth_ctx, stage_tag: str, remark: str, meta: dict[str, Any]) -> AuditLog:
    return AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType="API",
        entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
        action=str(action or "").upper() or "UNKNOWN",
        fromState="",
        toState="",
        stageTag=stage_tag,
        remark=remark,
        actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
        actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
        at=iso_utc_now(),
        metaJson=json.dumps(meta),
    )


def create_app(cfg: Config | None = None) -> Flask:
    load_dotenv()
    cfg = cfg or Config()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)
    Base.metadata.create_all(bind=engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)

    limiter = SimpleRateLimiter()

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.get("/health")
    def health():
        return ok({"status": "ok", "workflowsEnabled": bool(cfg.WORKFLOWS_ENABLED)})

    @app.get("/")
    def index():
        return ok(
            {
                "status": "ok",
                "message": "Recruitment backend is running. Use /health for a quick check and POST /api for actions.",
                "endpoints": {"health": "/health", "api": "/api"},
            }
        )

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}. Use GET /health or POST /api.", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed. Use POST /api for actions.", http_status=405)

    @app.post("/api")
    def api_route():
        cfg2: Config = app.config["CFG"]
        raw = request.get_data(as_text=True)
        db = None
        auth_ctx = None
        action_u = ""
        data: Any = {}

        try:
            body = parse_json_body(raw)
            action_u = str(body.get("action") or "").upper().strip()
            token = body.get("token")
            data = body.get("data") or {}

            if not action_u:
                raise ApiError("BAD_REQUEST", "Missing action")
            if not isinstance(data, dict):
                raise ApiError("BAD_REQUEST", "data must be an object")

            ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
            # A generous global limit plus a per-action limit.
            limiter.check(f"{ip}:GLOBAL", cfg2.RATE_LIMIT_GLOBAL)
            limiter.check(f"{ip}:API:{action_u}", cfg2.RATE_LIMIT_DEFAULT)

            db = SessionLocal()

            if not is_public_action(action_u):
                auth_ctx = validate_session_token(db, token)
                if not auth_ctx.valid:
                    raise ApiError("AUTH_INVALID", "Invalid or expired session")
            elif token:
                maybe = validate_session_token(db, token)
                auth_ctx = maybe if maybe.valid else None

            role = role_or_public(auth_ctx)
            assert_permission(role, action_u)

            out = dispatch(action_u, data, auth_ctx, db, cfg2)

            db.add(_audit_row(action_u, auth_ctx, "API_CALL", "", {"data": redact_for_audit(data)}))
            db.commit()

            latency_ms = int((now_monotonic() - g.start_ts) * 1000)
            logging.getLogger("api").info(
                "request_id=%s action=%s user=%s role=%s latency_ms=%s",
                g.request_id,
                action_u,
                (auth_ctx.userId if auth_ctx else "PUBLIC"),
                (auth_ctx.role if auth_ctx else "PUBLIC"),
                latency_ms,
            )

            return ok(out)
        except ApiError as e:
            if db is not None:
                db.rollback()
            _write_error_audit(action_u, auth_ctx, data, e)
            logging.getLogger("api").info(
                "request_id=%s action=%s error=%s message=%r", g.request_id, action_u, e.code, e.message
            )
            return err(e.code, e.message, http_status=e.http_status, details=e.details)
        except Exception:
            if db is not None:
                db.rollback()
            api_err = ApiError("INTERNAL", "Unexpected error")
            _write_error_audit(action_u, auth_ctx, data, api_err)
            logging.getLogger("api").exception("request_id=%s action=%s", g.request_id, action_u)
            return err(api_err.code, api_err.message, http_status=api_err.http_status)
        finally:
            if db is not None:
                db.close()

    _register_cli(app)
    return app


def _write_error_audit(action: str, auth_ctx, data: Any, err_obj: ApiError):
    db2 = SessionLocal()
    try:
        db2.add(
            _audit_row(
                action,
                auth_ctx,
                "API_ERROR",
                f"{err_obj.code}: {err_obj.message}",
                {
                    "data": redact_for_audit(data or {}),
                    "error": {"code": err_obj.code, "message": err_obj.message},
                },
            )
        )
        db2.commit()
    except Exception:
        db2.rollback()
        logging.getLogger("api").warning("error_audit_failed action=%s", action, exc_info=True)
    finally:
        db2.close()


def _register_cli(app: Flask) -> None:
    from actions.session_actions import ensure_user, open_session
    from actions.workflow_engine import dispatch_due_actions, scan_time_triggers
    from gdpr import enforce_retention

    def _run(fn):
        db = SessionLocal()
        try:
            out = fn(db, app.config["CFG"])
            db.commit()
            return out
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @app.cli.command("seed-admin")
    @click.option("--email", required=True)
    @click.option("--name", "full_name", default="")
    @click.option("--role", default="ADMIN", show_default=True)
    def seed_admin(email: str, full_name: str, role: str):
        """Create (or reactivate) a user and print a session token."""

        def _seed(db, cfg):
            user = ensure_user(db, email=email, full_name=full_name, role=role)
            db.flush()
            return {"userId": user.userId, "role": user.role, **open_session(db, user, cfg)}

        try:
            out = _run(_seed)
        except ApiError as e:
            raise click.ClickException(e.message)
        click.echo(json.dumps(out, indent=2))

    @app.cli.command("workflows-scan")
    def workflows_scan():
        """Evaluate days_in_stage and no_activity workflows."""
        click.echo(json.dumps(_run(lambda db, cfg: scan_time_triggers(db, cfg=cfg)), indent=2))

    @app.cli.command("workflows-dispatch")
    @click.option("--limit", default=100, show_default=True)
    def workflows_dispatch(limit: int):
        """Run delayed workflow actions that are due."""
        click.echo(json.dumps(_run(lambda db, cfg: dispatch_due_actions(db, cfg=cfg, limit=limit)), indent=2))

    @app.cli.command("gdpr-retention")
    @click.option("--days", type=int, default=None, help="Defaults to DATA_RETENTION_DAYS.")
    @click.option("--apply", "apply_", is_flag=True, help="Actually erase; the default is a dry run.")
    def gdpr_retention(days, apply_: bool):
        """Erase rejected/archived candidates past the retention period."""

        def _enforce(db, cfg):
            return enforce_retention(db, retention_days=days or cfg.DATA_RETENTION_DAYS, dry_run=not apply_)

        click.echo(json.dumps(_run(_enforce), indent=2))


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]
    app.run(host=cfg.HOST, port=cfg.PORT)
