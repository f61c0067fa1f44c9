#!/usr/bin/env python3
"""
Tool Manager Dashboard API
JSON endpoints over the tool registry plus scan triggers and tool images.

The runtime (registry, executor, config) is attached as app.tool_runtime by
tool_manager_runtime.py; every route answers 503 until it is.
"""

import logging
from datetime import datetime
from pathlib import Path

from flask import Flask, jsonify, request, send_file, send_from_directory
from werkzeug.exceptions import NotFound
from werkzeug.utils import secure_filename

API_VERSION = "2.0.0"

ALLOWED_ORIGINS = {"http://localhost:5173", "http://localhost:3000"}

IMAGE_EXTENSIONS = ['.JPG', '.jpg', '.jfif', '.gif', '.png', '.jpeg']
IMAGE_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".jfif": "image/jpeg",
}

app = Flask(__name__)
app.tool_runtime = None


def _error(code: str, message: str, status: int, details=None):
    body = {"error": {"code": code, "message": message}}
    if details is not None:
        body["error"]["details"] = details
    return jsonify(body), status


def _runtime():
    return getattr(app, 'tool_runtime', None)


def _service_unavailable():
    logging.error("❌ API Request Failed: registry not initialized")
    return _error("SERVICE_UNAVAILABLE", "Tool registry not initialized", 503)


def _parse_bool(value):
    if value is None:
        return None
    return str(value).strip().lower() == 'true'


@app.before_request
def _log_request():
    logging.info(f"{request.method} {request.path} [{request.remote_addr}]")


@app.after_request
def _cors(response):
    origin = request.headers.get('Origin')
    if origin in ALLOWED_ORIGINS:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Credentials'] = 'true'
        response.headers['Vary'] = 'Origin'
    return response


@app.route('/api/status')
def get_status():
    """Service health and executor state"""
    runtime = _runtime()
    cfg = runtime.config if runtime else None
    executor = runtime.executor if runtime else None
    return jsonify({
        'status': 'running',
        'mode': 'auto' if (cfg and cfg.get('app.auto_mode')) else 'manual',
        'testMode': bool(cfg and cfg.get('app.test_mode')),
        'version': API_VERSION,
        'timestamp': datetime.now().isoformat(),
        'registry': 'initialized' if (runtime and runtime.registry is not None) else 'not initialized',
        'executor': executor.status() if executor else None,
    })


@app.route('/api/tools')
def get_tools():
    """List tools, optionally filtered by status and isMatrix"""
    runtime = _runtime()
    if not runtime or runtime.registry is None:
        return _service_unavailable()
    try:
        tools = runtime.registry.query(
            status=request.args.get('status'),
            is_matrix=_parse_bool(request.args.get('isMatrix')),
        )
    except ValueError as e:
        return _error("VALIDATION_ERROR", str(e), 400)
    except Exception as e:
        logging.error(f"Failed to get tools: {e}", exc_info=True)
        return _error("INTERNAL_ERROR", "Failed to retrieve tools", 500, str(e))

    logging.info(f"📊 Returning {len(tools)} tools to Dashboard")
    return jsonify({
        'tools': [t.to_dict(include_history=False) for t in tools],
        'total': len(tools),
        'stats': runtime.registry.stats(),
    })


@app.route('/api/tools/matrix')
@app.route('/api/tools/matrix/usage')
def get_matrix_tools():
    """Matrix tools (ECUT/MFC/XF/XFEED) with inventory and usage minutes"""
    runtime = _runtime()
    if not runtime or runtime.registry is None:
        return _service_unavailable()
    try:
        tools = runtime.registry.query(is_matrix=True)
        logging.info(f"📊 Returning {len(tools)} matrix tools to Dashboard")
        return jsonify({
            'tools': [t.to_dict(include_history=False) for t in tools],
            'total': len(tools),
            'timestamp': datetime.now().isoformat(),
        })
    except Exception as e:
        logging.error(f"Failed to get matrix tools: {e}", exc_info=True)
        return _error("INTERNAL_ERROR", "Failed to retrieve matrix tools", 500, str(e))


@app.route('/api/tools/<tool_id>')
def get_tool(tool_id):
    """Single tool with its usage history"""
    runtime = _runtime()
    if not runtime or runtime.registry is None:
        return _service_unavailable()
    tool = runtime.registry.get_by_id(tool_id)
    if tool is None:
        return _error("NOT_FOUND", f"Tool with ID {tool_id} not found", 404)
    return jsonify(tool.to_dict())


@app.route('/api/projects')
def get_projects():
    runtime = _runtime()
    if not runtime or runtime.registry is None:
        return _service_unavailable()
    try:
        projects = runtime.registry.projects()
        return jsonify({'projects': projects, 'total': len(projects)})
    except Exception as e:
        logging.error(f"Failed to get projects: {e}", exc_info=True)
        return _error("INTERNAL_ERROR", "Failed to retrieve projects", 500, str(e))


@app.route('/api/analysis/upcoming')
def get_upcoming():
    """Tools that running jobs need, flagged when stock is at or below threshold"""
    runtime = _runtime()
    if not runtime or runtime.registry is None:
        return _service_unavailable()
    try:
        data = runtime.registry.upcoming()
        if data['lowStock']:
            logging.warning(f"⚠️ {data['lowStock']} in-use tool(s) at or below warning threshold")
        data['timestamp'] = datetime.now().isoformat()
        return jsonify(data)
    except Exception as e:
        logging.error(f"Failed to get upcoming requirements: {e}", exc_info=True)
        return _error("INTERNAL_ERROR", "Failed to retrieve upcoming requirements", 500, str(e))


@app.route('/api/stats')
def get_stats():
    runtime = _runtime()
    if not runtime or runtime.registry is None:
        return _service_unavailable()
    executor = runtime.executor
    last = executor.last_report if executor else None
    return jsonify({
        'stats': runtime.registry.stats(),
        'lowStock': [t.matrix_code for t in runtime.registry.low_stock(is_matrix=True)],
        'lastCycle': last.to_dict() if last else None,
    })


def _run_scan():
    runtime = _runtime()
    if not runtime or runtime.registry is None:
        return None, _service_unavailable()
    report = runtime.ensure_executor().process_files()
    if report is None or not report.ok:
        message = report.error if report else "Scan did not run"
        logging.error(f"Tool scan failed: {message}")
        return None, _error("SCAN_FAILED", message, 500, report.to_dict() if report else None)
    return report, None


@app.route('/api/scan', methods=['POST'])
def scan():
    """Run a reconciliation cycle now"""
    try:
        report, failure = _run_scan()
        if failure:
            return failure
        return jsonify({
            'success': True,
            'message': f"{report.tools} tools scanned",
            'toolCount': report.tools,
            'cycle': report.to_dict(),
        })
    except Exception as e:
        logging.error(f"Tool scan failed: {e}", exc_info=True)
        return _error("SCAN_FAILED", str(e), 500)


@app.route('/api/trigger-scan', methods=['POST'])
def trigger_scan():
    """Called by the job-log scanner; blocks until the cycle completes"""
    logging.info("📡 Received scan trigger - starting tool analysis...")
    try:
        report, failure = _run_scan()
        if failure:
            return failure
        logging.info("✅ Tool analysis completed")
        return jsonify({
            'success': True,
            'message': "Tool analysis scan completed",
            'timestamp': datetime.now().isoformat(),
        })
    except Exception as e:
        logging.error(f"Failed to trigger tool analysis: {e}", exc_info=True)
        return _error("TRIGGER_ERROR", "Failed to trigger tool analysis", 500, str(e))


@app.route('/api/config', methods=['POST'])
def apply_config():
    """Apply dashboard configuration and start/stop automatic scanning"""
    runtime = _runtime()
    if not runtime:
        return _service_unavailable()

    data = request.get_json(silent=True) or {}
    test_mode = data.get('testMode')
    if not isinstance(test_mode, bool):
        return _error("VALIDATION_ERROR", "testMode (boolean) is required", 400)
    auto_run = bool(data.get('autoRun', False))
    working_folder = data.get('workingFolder')
    scan_paths = data.get('scanPaths') or {}

    try:
        cfg = runtime.config
        cfg.set('app.test_mode', test_mode)
        cfg.set('app.auto_mode', auto_run)
        if working_folder:
            cfg.set('app.working_folder', working_folder)

        paths_changed = False
        if isinstance(scan_paths, dict):
            if scan_paths.get('jsonFiles'):
                cfg.set('paths.usage', scan_paths['jsonFiles'])
                paths_changed = True
            if scan_paths.get('excelFiles'):
                cfg.set('paths.inventory', scan_paths['excelFiles'])
                paths_changed = True
        if paths_changed:
            runtime.rebuild_sources()

        logging.info(
            f"Configuration updated from Dashboard: testMode={test_mode}, autoMode={auto_run}, "
            f"workingFolder={working_folder}"
        )

        if auto_run:
            runtime.start_auto()
        else:
            runtime.stop_auto()

        return jsonify({
            'success': True,
            'message': "Configuration applied successfully",
            'config': {'testMode': cfg.get('app.test_mode'), 'autoMode': cfg.get('app.auto_mode')},
            'timestamp': datetime.now().isoformat(),
        })
    except Exception as e:
        logging.error(f"Failed to apply configuration: {e}", exc_info=True)
        return _error("INTERNAL_ERROR", "Failed to apply configuration", 500, str(e))


@app.route('/api/tool-images/<manufacturer>/<filename>')
def get_tool_image(manufacturer, filename):
    """Serve a tool type image, trying other extensions when the exact file is missing"""
    runtime = _runtime()
    if not runtime:
        return _service_unavailable()
    try:
        manufacturer = secure_filename(manufacturer)
        filename = secure_filename(filename)
        folder = runtime.config.path('tool_images') / manufacturer

        found = None
        candidate = folder / filename
        if filename and candidate.is_file():
            found = candidate
        else:
            base = Path(filename).stem
            for ext in IMAGE_EXTENSIONS:
                candidate = folder / f"{base}{ext}"
                if base and candidate.is_file():
                    found = candidate
                    break

        if not found:
            logging.warning(f"Tool image not found: {manufacturer}/{filename}")
            return jsonify({'error': 'Image not found'}), 404

        content_type = IMAGE_CONTENT_TYPES.get(found.suffix.lower(), 'application/octet-stream')
        response = send_file(str(found), mimetype=content_type)
        response.headers['Cache-Control'] = 'public, max-age=86400'
        logging.info(f"Served tool image: {manufacturer}/{found.name}")
        return response
    except Exception as e:
        logging.error(f"Failed to serve tool image: {e}")
        return jsonify({'error': 'Failed to serve image'}), 500


@app.route('/api/images/tools/<path:filename>')
def get_family_image(filename):
    runtime = _runtime()
    if not runtime:
        return _service_unavailable()
    try:
        return send_from_directory(str(runtime.config.path('family_images')), filename)
    except NotFound:
        logging.warning(f"Family image not found: {filename}")
        return jsonify({'error': 'Image not found'}), 404


@app.errorhandler(NotFound)
def not_found(e):
    return _error("NOT_FOUND", f"Route {request.method} {request.path} not found", 404)
