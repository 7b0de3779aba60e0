import io
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request, send_file
from flask_login import current_user, login_required

from .arbiter import Principal
from .errors import ValidationError
from .repositories import page_dict

api = Blueprint("api", __name__, url_prefix="/api")


# ----------------------------
# Helper Functions
# ----------------------------
def services():
    return current_app.extensions["credledger"]


def current_principal():
    if current_user.is_authenticated:
        return Principal.from_user(current_user)
    return None


def request_payload():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def parse_datetime(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"{name} must be an ISO date/time") from e


def page_args():
    return {
        "page": request.args.get("page", 1, type=int),
        "per_page": request.args.get("perPage", 20, type=int),
    }


def change_response(body):
    return jsonify(body), 207 if body["partial"] else 200


# ----------------------------
# Documents
# ----------------------------
@api.route("/documents", methods=["POST"])
@login_required
def issue_document():
    upload = request.files.get("file")
    if upload is None:
        raise ValidationError("No file uploaded")
    data = upload.read()
    form = request.form
    metadata = {key: form.get(key) for key in (
        "studentName", "studentId", "institutionName", "documentType", "issueDate", "description")}
    principal = current_principal()
    ip = request.remote_addr
    svc = services()

    async def run():
        result = await svc.pipeline.issue(
            data, upload.filename, upload.mimetype, metadata,
            owner_address=form.get("ownerAddress") or None, issuer=principal, ip_address=ip)
        return result.to_dict()

    return jsonify(svc.call(run)), 201


@api.route("/documents", methods=["GET"])
@login_required
def search_documents():
    args = request.args
    pagination = services().document_service.search(
        current_principal(), status=args.get("status") or None,
        document_type=args.get("documentType") or None, text=args.get("search") or None, **page_args())
    return jsonify({"success": True, **page_dict(pagination)})


@api.route("/documents/<document_hash>")
@login_required
def get_document(document_hash):
    document = services().document_service.get(document_hash, current_principal())
    body = document.to_dict()
    body["verificationUrl"] = services().document_service.verification_url(document)
    return jsonify({"success": True, "document": body})


@api.route("/documents/owner/<address>")
@login_required
def list_owner_documents(address):
    pagination = services().document_service.list_for_owner(
        address, current_principal(),
        include_inactive=request.args.get("includeInactive") == "true", **page_args())
    return jsonify({"success": True, **page_dict(pagination)})


@api.route("/documents/<document_hash>/download")
@login_required
def download_document(document_hash):
    principal = current_principal()
    ip = request.remote_addr
    svc = services()

    async def run():
        data, document = await svc.document_service.download(document_hash, principal, ip_address=ip)
        return data, document.original_name, document.mime_type

    data, filename, mime_type = svc.call(run)
    return send_file(io.BytesIO(data), mimetype=mime_type, as_attachment=True, download_name=filename)


@api.route("/documents/<document_hash>/qr")
@login_required
def document_qr(document_hash):
    png = services().document_service.qr_png(document_hash, current_principal())
    return send_file(io.BytesIO(png), mimetype="image/png", download_name="verification-qr.png")


# ----------------------------
# Access management
# ----------------------------
@api.route("/documents/<document_hash>/access", methods=["POST"])
@login_required
def grant_access(document_hash):
    address = request_payload().get("address")
    principal, ip, svc = current_principal(), request.remote_addr, services()

    async def run():
        result = await svc.access.grant(document_hash, address, principal, ip_address=ip)
        return result.to_dict()

    return change_response(svc.call(run))


@api.route("/documents/<document_hash>/access/<address>", methods=["DELETE"])
@login_required
def revoke_access(document_hash, address):
    principal, ip, svc = current_principal(), request.remote_addr, services()

    async def run():
        result = await svc.access.revoke(document_hash, address, principal, ip_address=ip)
        return result.to_dict()

    return change_response(svc.call(run))


@api.route("/documents/<document_hash>/transfer", methods=["POST"])
@login_required
def transfer_document(document_hash):
    new_owner = request_payload().get("newOwner")
    principal, ip, svc = current_principal(), request.remote_addr, services()

    async def run():
        result = await svc.access.transfer(document_hash, new_owner, principal, ip_address=ip)
        return result.to_dict()

    return change_response(svc.call(run))


@api.route("/documents/<document_hash>/deactivate", methods=["POST"])
@login_required
def deactivate_document(document_hash):
    reason = request_payload().get("reason")
    principal, ip, svc = current_principal(), request.remote_addr, services()

    async def run():
        result = await svc.access.deactivate(document_hash, reason, principal, ip_address=ip)
        return result.to_dict()

    return change_response(svc.call(run))


# ----------------------------
# Verification (open to anonymous callers)
# ----------------------------
@api.route("/verify", methods=["POST"])
def verify_document():
    payload = request_payload()
    upload = request.files.get("file")
    data = upload.read() if upload is not None else None
    principal, svc = current_principal(), services()
    kwargs = {
        "document_hash": payload.get("hash") or payload.get("documentHash") or None,
        "data": data,
        "cid": payload.get("cid") or None,
        "tx_hash": payload.get("tx") or None,
        "principal": principal,
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }

    async def run():
        result = await svc.verification.verify(**kwargs)
        return result.to_dict()

    return jsonify(svc.call(run))


@api.route("/verify/qr", methods=["POST"])
def verify_qr_url():
    url = request_payload().get("url")
    principal, svc = current_principal(), services()
    ip, agent = request.remote_addr, request.headers.get("User-Agent")

    async def run():
        result = await svc.verification.verify_qr(url, principal=principal, ip_address=ip, user_agent=agent)
        return result.to_dict()

    return jsonify(svc.call(run))


@api.route("/verify", methods=["GET"])
def verify_from_link():
    """Landing point of the URL embedded in QR codes."""
    principal, svc = current_principal(), services()
    ip, agent = request.remote_addr, request.headers.get("User-Agent")
    url = request.url

    async def run():
        result = await svc.verification.verify_qr(url, principal=principal, ip_address=ip, user_agent=agent)
        return result.to_dict()

    return jsonify(svc.call(run))


@api.route("/documents/<document_hash>/verifications")
@login_required
def verification_history(document_hash):
    pagination = services().verification.history(
        document_hash, current_principal(),
        result=request.args.get("result") or None,
        start=parse_datetime("from"), end=parse_datetime("to"), **page_args())
    return jsonify({"success": True, **page_dict(pagination)})


@api.route("/documents/<document_hash>/verifications/stats")
@login_required
def verification_stats(document_hash):
    stats = services().verification.statistics(document_hash, current_principal())
    return jsonify({"success": True, "statistics": stats})


# ----------------------------
# Admin
# ----------------------------
@api.route("/admin/verifications")
@login_required
def admin_verifications():
    pagination = services().verification.search(
        current_principal(),
        document_hash=request.args.get("hash") or None,
        result=request.args.get("result") or None,
        verifier=request.args.get("verifier") or None,
        start=parse_datetime("from"), end=parse_datetime("to"), **page_args())
    return jsonify({"success": True, **page_dict(pagination)})


@api.route("/admin/suspicious")
@login_required
def suspicious_activity():
    report = services().verification.suspicious_report(current_principal())
    return jsonify({"success": True, "documents": report})


@api.route("/admin/audit")
@login_required
def audit_trail():
    principal = current_principal()
    if not principal.is_admin:
        return jsonify({"success": False, "error": "access_denied", "message": "Admin role required"}), 403
    pagination = services().audit.query(
        event_type=request.args.get("eventType") or None,
        actor=request.args.get("actor") or None,
        resource_id=request.args.get("resource") or None,
        result=request.args.get("result") or None,
        start=parse_datetime("from"), end=parse_datetime("to"), **page_args())
    return jsonify({"success": True, **page_dict(pagination)})


@api.route("/admin/roles", methods=["POST"])
@login_required
def assign_role():
    payload = request_payload()
    principal, ip, svc = current_principal(), request.remote_addr, services()

    async def run():
        result = await svc.access.assign_role(payload.get("address"), payload.get("role"), principal, ip_address=ip)
        return result.to_dict()

    return change_response(svc.call(run))


# ----------------------------
# Health
# ----------------------------
@api.route("/health")
def health():
    svc = services()
    body = svc.call(svc.health)
    body["chainTransactions"] = svc.chain_txs.summary()
    return jsonify(body), 200 if body["status"] == "ok" else 503
