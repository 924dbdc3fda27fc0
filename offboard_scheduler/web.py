"""Flask-powered JSON API for scheduled offboardings."""
from __future__ import annotations

import os
import secrets
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import msal
import requests
from flask import Flask, g, has_request_context, jsonify, redirect, request, session, url_for

from .adapters import AdapterFactory, build_adapters
from .catalog import list_templates
from .config import AppConfig, AuthConfig, ensure_default_config, load_config
from .engine import OffboardingScheduler
from .errors import InvalidState, NotFound, OffboardingError, ValidationError
from .history import AuditEntry, ExecutionLogEntry, OffboardingHistory
from .models import STATUS_COMPLETED, ScheduledOffboarding, Scope
from .schedule_store import ScheduledOffboardingStore

_AUTH_EXEMPT_ENDPOINTS = {"login", "logout", "auth_callback", "index", "static"}
_DEFAULT_AUTH_SCOPES = ("https://graph.microsoft.com/User.Read",)
_RESERVED_AUTH_SCOPES = {"openid", "profile", "offline_access"}
_LOCAL_TENANT = "local"


def create_app(config_path: Optional[Path | str] = None, adapter_factory: Optional[AdapterFactory] = None) -> Flask:
    """Create and configure the Flask application."""

    resolved_config_path = Path(config_path) if config_path else None
    ensure_default_config(resolved_config_path)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("OFFBOARD_WEB_SECRET", "offboard-scheduler-secret")
    app.config["CONFIG_PATH"] = resolved_config_path
    app.config["ADAPTER_FACTORY"] = adapter_factory
    app.json.sort_keys = False

    register_routes(app)
    return app


def register_routes(app: Flask) -> None:
    """Attach all web routes to the provided Flask app."""

    _ensure_due_worker(app)

    @app.before_request
    def _enforce_authentication() -> Optional[Any]:
        config = _load_app_config(app)
        current_user = session.get("user")
        g.current_user = current_user
        if not config.auth.enabled:
            return None

        endpoint = request.endpoint or ""
        if endpoint.startswith("static") or endpoint in _AUTH_EXEMPT_ENDPOINTS:
            return None

        if current_user:
            return None

        if request.path.startswith("/api/"):
            return jsonify({"error": "Authentication required."}), 401
        session["post_login_redirect"] = request.url
        return redirect(url_for("login"))

    @app.errorhandler(OffboardingError)
    def _handle_offboarding_error(exc: OffboardingError) -> Any:
        if isinstance(exc, ValidationError):
            status = 400
        elif isinstance(exc, NotFound):
            status = 404
        elif isinstance(exc, InvalidState):
            status = 409
        else:
            status = 500
        if status == 500:
            app.logger.error("Scheduled offboarding request failed: %s", exc)
        return jsonify({"error": str(exc)}), status

    @app.route("/")
    def index() -> Any:
        config = _load_app_config(app)
        return jsonify(
            {
                "service": "offboard-scheduler",
                "auth_enabled": config.auth.enabled,
                "current_user": session.get("user"),
            }
        )

    @app.route("/login")
    def login() -> Any:
        config = _load_app_config(app)
        if not config.auth.enabled:
            return jsonify({"error": "Authentication is not enabled."}), 400
        if not config.auth.has_credentials:
            return jsonify({"error": "Authentication is enabled but not fully configured."}), 500

        state = secrets.token_urlsafe(32)
        session["auth_state"] = state
        next_url = request.args.get("next") or session.get("post_login_redirect") or url_for("index")
        session["post_login_redirect"] = next_url

        client = _build_msal_client(config.auth)
        requested_scopes = list(config.auth.scopes or _DEFAULT_AUTH_SCOPES)
        scopes = [scope for scope in requested_scopes if scope.lower() not in _RESERVED_AUTH_SCOPES]
        auth_url = client.get_authorization_request_url(
            scopes=scopes or list(_DEFAULT_AUTH_SCOPES),
            state=state,
            redirect_uri=_auth_redirect_uri(config.auth),
            prompt="select_account",
        )
        return redirect(auth_url)

    @app.route("/logout")
    def logout() -> Any:
        session.clear()
        return redirect(url_for("index"))

    @app.route("/auth/callback")
    def auth_callback() -> Any:
        config = _load_app_config(app)
        if not config.auth.enabled:
            return jsonify({"error": "Authentication is not enabled."}), 400

        expected_state = session.get("auth_state")
        if not expected_state or expected_state != request.args.get("state"):
            app.logger.warning("Auth callback: state mismatch; restarting sign-in.")
            return redirect(url_for("login"))
        session.pop("auth_state", None)

        if "error" in request.args:
            message = request.args.get("error_description") or "Sign-in was cancelled."
            return jsonify({"error": message}), 401

        code = request.args.get("code")
        if not code:
            return jsonify({"error": "Missing authorization code."}), 400

        client = _build_msal_client(config.auth)
        token_result = client.acquire_token_by_authorization_code(
            code,
            scopes=list(config.auth.scopes or _DEFAULT_AUTH_SCOPES),
            redirect_uri=_auth_redirect_uri(config.auth),
        )
        if "access_token" not in token_result:
            app.logger.error(
                "Auth callback: token acquisition failed (error=%s, error_description=%s, correlation_id=%s)",
                token_result.get("error"),
                token_result.get("error_description"),
                token_result.get("correlation_id"),
            )
            return jsonify({"error": token_result.get("error_description") or "Unable to complete sign-in."}), 401

        claims = token_result.get("id_token_claims") or {}
        principal = claims.get("preferred_username") or claims.get("oid") or "unknown"
        allowed_groups = set(config.auth.allowed_groups or [])
        user_groups = _extract_user_groups(claims, token_result, app.logger)
        if allowed_groups and user_groups.isdisjoint(allowed_groups):
            app.logger.warning(
                "Auth callback: denying user=%s oid=%s (required groups=%s, resolved_groups=%s)",
                principal,
                claims.get("oid"),
                sorted(allowed_groups),
                sorted(user_groups),
            )
            return jsonify({"error": "You do not have access to this application."}), 403

        session["user"] = {
            "name": claims.get("name") or claims.get("preferred_username") or "Signed-in user",
            "upn": claims.get("preferred_username") or claims.get("email"),
            "oid": claims.get("oid"),
            "tid": claims.get("tid"),
            "groups": list(user_groups),
        }
        session["session_id"] = secrets.token_urlsafe(16)
        app.logger.info("Auth callback: signed in user=%s tenant=%s", principal, claims.get("tid"))
        return redirect(session.pop("post_login_redirect", url_for("index")))

    @app.get("/api/offboarding/templates")
    def api_templates() -> Any:
        return jsonify({"templates": list_templates()})

    @app.get("/api/offboarding/scheduled")
    def api_list_scheduled() -> Any:
        config = _load_app_config(app)
        scope = _resolve_scope(config)
        status = (request.args.get("status") or "").strip() or None
        records = _get_scheduler(app, config).list(scope, status=status)
        return jsonify({"items": [_serialize_schedule(record) for record in records]})

    @app.post("/api/offboarding/scheduled")
    def api_create_scheduled() -> Any:
        config = _load_app_config(app)
        scope = _resolve_scope(config)
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Request body must be a JSON object."}), 400
        record = _get_scheduler(app, config).create(scope, data)
        app.logger.info("Scheduled offboarding %s created by %s.", record.id, scope.owner_id or scope.session_id)
        return jsonify(_serialize_schedule(record)), 201

    @app.get("/api/offboarding/scheduled/<schedule_id>")
    def api_get_scheduled(schedule_id: str) -> Any:
        config = _load_app_config(app)
        record = _get_scheduler(app, config).get(schedule_id, _resolve_scope(config))
        return jsonify(_serialize_schedule(record))

    @app.put("/api/offboarding/scheduled/<schedule_id>")
    def api_update_scheduled(schedule_id: str) -> Any:
        config = _load_app_config(app)
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Request body must be a JSON object."}), 400
        record = _get_scheduler(app, config).update(schedule_id, _resolve_scope(config), data)
        return jsonify(_serialize_schedule(record))

    @app.delete("/api/offboarding/scheduled/<schedule_id>")
    def api_delete_scheduled(schedule_id: str) -> Any:
        config = _load_app_config(app)
        if not _get_scheduler(app, config).remove(schedule_id, _resolve_scope(config)):
            return jsonify({"error": "Not found or access denied"}), 404
        return jsonify({"success": True})

    @app.post("/api/offboarding/scheduled/<schedule_id>/execute")
    def api_execute_scheduled(schedule_id: str) -> Any:
        config = _load_app_config(app)
        scope = _resolve_scope(config)
        outcome = _get_scheduler(app, config).execute(schedule_id, scope, executed_by=scope.owner_id)
        return jsonify(
            {
                "success": outcome.schedule.status == STATUS_COMPLETED,
                "schedule": _serialize_schedule(outcome.schedule),
                "results": [result.to_dict() for result in outcome.results],
            }
        )

    @app.get("/api/offboarding/executions")
    def api_list_executions() -> Any:
        config = _load_app_config(app)
        entries = _get_scheduler(app, config).executions(
            _resolve_scope(config),
            schedule_id=request.args.get("scheduleId") or None,
            user_id=request.args.get("userId") or None,
            limit=_limit_arg(),
        )
        return jsonify({"items": [_serialize_execution(entry) for entry in entries]})

    @app.get("/api/offboarding/audit")
    def api_list_audit() -> Any:
        config = _load_app_config(app)
        entries = _get_scheduler(app, config).audit_trail(
            _resolve_scope(config),
            schedule_id=request.args.get("scheduleId") or None,
            limit=_limit_arg(),
        )
        return jsonify({"items": [_serialize_audit(entry) for entry in entries]})


def _limit_arg() -> Optional[int]:
    raw = (request.args.get("limit") or "").strip()
    if not raw:
        return None
    try:
        limit = int(raw)
    except ValueError:
        raise ValidationError("limit must be a positive integer.") from None
    if limit < 1:
        raise ValidationError("limit must be a positive integer.")
    return limit


def _load_app_config(app: Flask) -> AppConfig:
    if has_request_context():
        cached = getattr(g, "_app_config", None)
        if cached is None:
            cached = load_config(app.config.get("CONFIG_PATH"))
            g._app_config = cached
        return cached
    return load_config(app.config.get("CONFIG_PATH"))


def _resolve_scope(config: AppConfig) -> Scope:
    """Build the caller's scope from the signed-in session."""

    user = session.get("user") or {}
    session_id = session.get("session_id")
    if not session_id:
        session_id = secrets.token_urlsafe(16)
        session["session_id"] = session_id
    tenant_id = user.get("tid") or config.auth.tenant_id or config.m365.tenant_id or _LOCAL_TENANT
    return Scope(tenant_id=tenant_id, session_id=session_id, owner_id=user.get("upn") or user.get("oid"))


def _get_scheduler(app: Flask, config: AppConfig) -> OffboardingScheduler:
    scheduler = app.config.get("_OFFBOARDING_SCHEDULER")
    path = config.storage.scheduled_offboardings_file
    history_path = config.storage.history_file
    if (
        scheduler is None
        or scheduler.store.path != Path(path)
        or scheduler.history is None
        or scheduler.history.path != Path(history_path)
    ):
        factory = app.config.get("ADAPTER_FACTORY") or (lambda scope: build_adapters(_load_app_config(app)))
        scheduler = OffboardingScheduler(
            ScheduledOffboardingStore(path),
            factory,
            step_timeout=config.scheduler.step_timeout_seconds,
            history=OffboardingHistory(history_path),
        )
        app.config["_OFFBOARDING_SCHEDULER"] = scheduler
    scheduler.step_timeout = config.scheduler.step_timeout_seconds
    return scheduler


def _serialize_schedule(record: ScheduledOffboarding) -> Dict[str, Any]:
    stored = record.to_dict()
    return {
        "id": record.id,
        "userId": record.subject.user_id,
        "userDisplayName": record.subject.display_name,
        "userEmail": record.subject.email,
        "scheduledDate": record.scheduled_date,
        "scheduledTime": record.scheduled_time,
        "scheduledDateTime": stored["scheduled_date_time"],
        "timezone": record.timezone,
        "template": stored["template"],
        "useCustomActions": stored["use_custom_actions"],
        "customActions": stored["custom_actions"],
        "status": record.status,
        "notifyManager": record.notify_manager,
        "notifyUser": record.notify_user,
        "managerEmail": record.manager_email,
        "customMessage": record.custom_message,
        "createdBy": record.created_by,
        "createdAt": stored["created_at"],
        "executedAt": stored["executed_at"],
        "executedBy": record.executed_by,
        "finishedAt": stored["finished_at"],
        "error": record.error,
        "results": stored["results"],
    }


def _serialize_execution(entry: ExecutionLogEntry) -> Dict[str, Any]:
    stored = entry.to_dict()
    return {
        "id": entry.id,
        "scheduleId": entry.schedule_id,
        "userId": entry.user_id,
        "userDisplayName": entry.user_display_name,
        "userEmail": entry.user_email,
        "executedBy": entry.executed_by,
        "startedAt": stored["started_at"],
        "finishedAt": stored["finished_at"],
        "status": entry.status,
        "totalSteps": entry.total_steps,
        "successfulSteps": entry.successful_steps,
        "failedSteps": entry.failed_steps,
        "results": stored["results"],
        "error": entry.error,
    }


def _serialize_audit(entry: AuditEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor": entry.actor,
        "action": entry.action,
        "scheduleId": entry.schedule_id,
        "details": entry.details,
        "timestamp": entry.to_dict()["timestamp"],
    }


def _build_msal_client(auth_config: AuthConfig) -> msal.ConfidentialClientApplication:
    authority = f"https://login.microsoftonline.com/{auth_config.tenant_id or 'common'}"
    return msal.ConfidentialClientApplication(
        client_id=auth_config.client_id,
        client_credential=auth_config.client_secret,
        authority=authority,
    )


def _auth_redirect_uri(auth_config: AuthConfig) -> str:
    if auth_config.redirect_uri:
        return auth_config.redirect_uri
    base = request.url_root.rstrip("/")
    return f"{base}{url_for('auth_callback')}"


def _extract_user_groups(claims: Dict[str, Any], token_result: Dict[str, Any], logger: Any) -> set[str]:
    groups = set(claims.get("groups") or [])
    if groups:
        return groups

    claim_names = claims.get("_claim_names") or {}
    if not claim_names.get("groups"):
        return groups
    access_token = token_result.get("access_token")
    if not access_token:
        logger.warning("Auth groups: groups claim present but no access token available.")
        return groups
    try:
        return _fetch_member_groups(access_token, logger)
    except requests.RequestException as exc:
        logger.warning("Unable to fetch group membership from Graph: %s", exc)
        return groups


def _fetch_member_groups(access_token: str, logger: Any) -> set[str]:
    headers = {"Authorization": f"Bearer {access_token}"}
    groups: set[str] = set()
    url: Optional[str] = "https://graph.microsoft.com/v1.0/me/memberOf?$select=id"
    while url:
        response = requests.get(url, headers=headers, timeout=10)
        if response.status_code != 200:
            logger.warning(
                "Auth groups: Graph memberOf request failed (status=%s body=%s)",
                response.status_code,
                response.text,
            )
            break
        payload = response.json()
        groups.update(entry["id"] for entry in payload.get("value", []) if entry.get("id"))
        url = payload.get("@odata.nextLink")
    logger.info("Auth groups: Graph memberOf returned %s unique groups.", len(groups))
    return groups


def _ensure_due_worker(app: Flask) -> None:
    if app.config.get("_DUE_WORKER_THREAD"):
        return
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return
    if not _load_app_config(app).scheduler.worker_enabled:
        return
    worker = threading.Thread(
        target=_due_worker_loop,
        args=(app,),
        name="offboarding-due-worker",
        daemon=True,
    )
    worker.start()
    app.config["_DUE_WORKER_THREAD"] = worker


def _due_worker_loop(app: Flask) -> None:
    interval = _load_app_config(app).scheduler.poll_interval_seconds
    while True:
        time.sleep(interval)
        try:
            with app.app_context():
                config = _load_app_config(app)
                interval = config.scheduler.poll_interval_seconds
                if not config.scheduler.worker_enabled:
                    continue
                _run_due_check(app, config)
        except Exception as exc:  # pragma: no cover - worker resilience
            app.logger.exception("Due-check worker encountered an error: %s", exc)


def _run_due_check(app: Flask, config: AppConfig) -> Dict[str, str]:
    scheduler = _get_scheduler(app, config)
    recovered = scheduler.recover_interrupted(timedelta(minutes=config.scheduler.interrupted_after_minutes))
    if recovered:
        app.logger.warning("Due-check marked %s interrupted offboarding(s) as failed.", len(recovered))
    processed = scheduler.run_due(limit=config.scheduler.due_batch_limit)
    if processed:
        app.logger.info("Due-check processed %s offboarding(s): %s", len(processed), processed)
    return processed


def main() -> None:
    """Run the development server."""

    app = create_app()
    app.run(
        host=os.environ.get("OFFBOARD_WEB_HOST", "0.0.0.0"),
        port=int(os.environ.get("OFFBOARD_WEB_PORT", "5000")),
        debug=os.environ.get("OFFBOARD_WEB_DEBUG") == "1",
    )


if __name__ == "__main__":
    main()
