import logging
import mimetypes
import os
import sys
import tempfile
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

import repo_files
from errors import InvalidArgument, IOFailure, MarksyncError
from git_repo import DEFAULT_PROVIDER, PROVIDERS
from identity import resolve_identity
from sync import (
    NO_CHANGES_MESSAGE,
    commit_and_push,
    existing_repo_path,
    open_working_copy,
    switch_branch,
    sync_repository,
)

import json as _json

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

_CONFIG_PATH = BASE_DIR / "marksync.config.json"
_DEFAULTS = {
    "port": 5001,
    "host": "127.0.0.1",
    "client_url": "http://localhost:3000",
    "repos_base_dir": "repos",
    "default_commit_message": "Update markdown files",
    "log_level": "INFO",
}
_ENV_VARS = {
    "port": "PORT",
    "host": "HOST",
    "client_url": "CLIENT_URL",
    "repos_base_dir": "REPOS_BASE_DIR",
    "default_commit_message": "DEFAULT_COMMIT_MESSAGE",
    "log_level": "LOG_LEVEL",
}


def _load_config() -> dict:
    load_dotenv()
    cfg = dict(_DEFAULTS)
    if _CONFIG_PATH.is_file():
        try:
            with open(_CONFIG_PATH) as f:
                user = _json.load(f)
            cfg.update(user)
        except (OSError, ValueError) as e:
            print(f"Warning: could not load {_CONFIG_PATH.name}: {e}")
    for key, var in _ENV_VARS.items():
        value = os.environ.get(var)
        if value:
            cfg[key] = value
    cfg["port"] = int(cfg["port"])
    return cfg


def _resolve_repos_dir(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = BASE_DIR / path
    return path.resolve()


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logging.getLogger("git").setLevel(logging.WARNING)


_cfg = _load_config()

PORT = _cfg["port"]
HOST = _cfg["host"]

app = Flask(__name__)
app.config.update(
    REPOS_DIR=_resolve_repos_dir(_cfg["repos_base_dir"]),
    CLIENT_URL=_cfg["client_url"],
    DEFAULT_COMMIT_MESSAGE=_cfg["default_commit_message"],
    LOG_LEVEL=_cfg["log_level"],
    UPLOAD_TMP_DIR=None,
)


def _repos_dir() -> Path:
    return Path(app.config["REPOS_DIR"])


def _upload_tmp_dir() -> Path:
    # Sanitized identities never start with a dot, so the default cannot clash.
    path = Path(app.config.get("UPLOAD_TMP_DIR") or _repos_dir() / ".uploads")
    path.mkdir(parents=True, exist_ok=True)
    return path


def _repo_root(repo: str) -> Path:
    return existing_repo_path(_repos_dir(), resolve_identity(), repo)


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _text_field(body: dict, key: str) -> str:
    value = body.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidArgument(f"{key} must be a string")
    return value


@app.after_request
def _cors_headers(resp):
    resp.headers["Access-Control-Allow-Origin"] = app.config["CLIENT_URL"]
    resp.headers["Access-Control-Allow-Credentials"] = "true"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    resp.headers["Vary"] = "Origin"
    return resp


@app.errorhandler(MarksyncError)
def _handle_error(e: MarksyncError):
    if e.status_code >= 500:
        logger.error(f"{request.method} {request.path}: {e.message}")
    return jsonify({"error": e.message}), e.status_code


@app.route("/api/config")
def api_config():
    return jsonify({
        "default_commit_message": app.config["DEFAULT_COMMIT_MESSAGE"],
        "providers": list(PROVIDERS),
    })


@app.route("/api/repo/sync", methods=["POST"])
def api_repo_sync():
    body = _json_body()
    repo_name = sync_repository(
        _repos_dir(),
        resolve_identity(),
        _text_field(body, "repoUrl"),
        _text_field(body, "token"),
        _text_field(body, "provider") or DEFAULT_PROVIDER,
    )
    return jsonify({"success": True, "repoPath": repo_name})


@app.route("/api/branches/<repo>")
def api_branches(repo):
    wc = open_working_copy(_repos_dir(), resolve_identity(), repo)
    return jsonify(wc.branches())


@app.route("/api/branch/<repo>")
def api_current_branch(repo):
    wc = open_working_copy(_repos_dir(), resolve_identity(), repo)
    return jsonify({"branch": wc.current_branch()})


@app.route("/api/branch/<repo>/switch", methods=["POST"])
def api_branch_switch(repo):
    branch = _json_body().get("branch")
    if not isinstance(branch, str) or not branch:
        raise InvalidArgument("Branch name is required")
    switch_branch(_repos_dir(), resolve_identity(), repo, branch)
    return jsonify({"success": True})


@app.route("/api/status/<repo>")
def api_status(repo):
    wc = open_working_copy(_repos_dir(), resolve_identity(), repo)
    return jsonify(wc.status().entries())


@app.route("/api/files/<repo>")
def api_files(repo):
    return jsonify(repo_files.list_tree(_repo_root(repo)))


@app.route("/api/file/<repo>/<path:file_path>", methods=["GET", "PUT", "POST", "DELETE"])
def api_file(repo, file_path):
    root = _repo_root(repo)
    if request.method == "PUT":
        content = _json_body().get("content")
        if not isinstance(content, str):
            raise InvalidArgument("Content must be a string")
        repo_files.write_file(root, file_path, content)
        return jsonify({"success": True})
    if request.method == "POST":
        content = _json_body().get("content") or ""
        if not isinstance(content, str):
            raise InvalidArgument("Content must be a string")
        repo_files.create_file(root, file_path, content)
        return jsonify({"success": True})
    if request.method == "DELETE":
        repo_files.delete_file(root, file_path)
        return jsonify({"success": True})
    return jsonify({"content": repo_files.read_file(root, file_path)})


@app.route("/api/image/<repo>/<path:file_path>")
def api_image(repo, file_path):
    fpath = repo_files.file_path(_repo_root(repo), file_path)
    mime, _ = mimetypes.guess_type(str(fpath))
    return send_file(fpath, mimetype=mime or "application/octet-stream")


@app.route("/api/folder/<repo>/<path:folder_path>", methods=["POST", "DELETE"])
def api_folder(repo, folder_path):
    root = _repo_root(repo)
    if request.method == "DELETE":
        repo_files.delete_folder(root, folder_path)
    else:
        repo_files.create_folder(root, folder_path)
    return jsonify({"success": True})


@app.route("/api/upload/<repo>", methods=["POST"], defaults={"folder": ""}, strict_slashes=False)
@app.route("/api/upload/<repo>/<path:folder>", methods=["POST"])
def api_upload(repo, folder):
    f = request.files.get("file")
    if f is None or not f.filename:
        raise InvalidArgument("No file uploaded")
    filename = secure_filename(f.filename)
    if not filename:
        raise InvalidArgument("Invalid filename")
    root = _repo_root(repo)
    fd, tmp_name = tempfile.mkstemp(dir=_upload_tmp_dir())
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        f.save(str(tmp_path))
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise IOFailure(f"Cannot receive upload: {e}")
    repo_files.store_upload(root, folder, tmp_path, filename)
    return jsonify({"success": True, "filename": filename})


@app.route("/api/repo/<repo>/commit", methods=["POST"])
def api_repo_commit(repo):
    body = _json_body()
    committed = commit_and_push(
        _repos_dir(),
        resolve_identity(),
        repo,
        _text_field(body, "repoUrl"),
        _text_field(body, "token"),
        provider=_text_field(body, "provider") or DEFAULT_PROVIDER,
        message=_text_field(body, "message"),
        default_message=app.config["DEFAULT_COMMIT_MESSAGE"],
    )
    if not committed:
        return jsonify({"success": True, "message": NO_CHANGES_MESSAGE})
    return jsonify({"success": True})


def main():
    setup_logging(app.config["LOG_LEVEL"])
    repos_dir = _repos_dir()
    repos_dir.mkdir(parents=True, exist_ok=True)
    print(f"Repositories will be stored in: {repos_dir}")
    print(f"Serving API on http://{HOST}:{PORT}  (client origin {app.config['CLIENT_URL']})")
    app.run(host=HOST, port=PORT)


if __name__ == "__main__":
    main()
