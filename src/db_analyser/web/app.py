"""
Database Analyser - Web Application
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
import os

from flask import Flask, jsonify, request

from ..config import load_config
from ..errors import (
    AnalysisCancelled, AnalyzerFailed, ConnectionFailure, PrecursorMissing, SessionBusy,
    UnknownAnalyzer, UnknownDatabase, UnknownDialect, UnknownSession,
)
from ..models import to_jsonable
from ..session import SessionManager

logger = logging.getLogger(__name__)


def _error(message, status):
    return jsonify({"error": str(message)}), status


def create_app(manager: SessionManager) -> Flask:
    """Build the JSON API around a session manager."""
    app = Flask(__name__)
    app.config['SESSION_MANAGER'] = manager

    @app.errorhandler(UnknownSession)
    @app.errorhandler(UnknownDatabase)
    def not_found(e):
        return _error(e, 404)

    @app.errorhandler(SessionBusy)
    @app.errorhandler(PrecursorMissing)
    def conflict(e):
        return _error(e, 409)

    @app.errorhandler(UnknownAnalyzer)
    @app.errorhandler(UnknownDialect)
    def bad_request(e):
        return _error(e, 400)

    @app.errorhandler(ConnectionFailure)
    def connection_failure(e):
        return _error(e, 502)

    @app.errorhandler(AnalyzerFailed)
    def analyzer_failed(e):
        logger.error(f"Analysis failed: {e}")
        return jsonify({"error": str(e), "analyzer": e.analyzer}), 500

    @app.errorhandler(AnalysisCancelled)
    def cancelled(e):
        return jsonify({"status": "cancelled"}), 200

    @app.route('/api/connect', methods=['POST'])
    def connect():
        """Open a session for a connection string and dialect"""
        body = request.get_json(silent=True) or {}
        connection_string = body.get('connection_string')
        if not connection_string:
            return _error("connection_string is required", 400)
        info = manager.connect(connection_string, body.get('dialect', 'sqlserver'))
        return jsonify(info), 201

    @app.route('/api/sessions/<session_id>/analysis', methods=['POST'])
    def run_analysis(session_id):
        """Run the requested analyzers (all by default)"""
        body = request.get_json(silent=True) or {}
        result = manager.run_analysis(session_id, body.get('analyzers'))
        return jsonify(result.to_dict())

    @app.route('/api/sessions/<session_id>/analyzers/<name>', methods=['POST'])
    def run_single_analyzer(session_id, name):
        """(Re)compute one analyzer's slice"""
        body = request.get_json(silent=True) or {}
        force = bool(body.get('force', request.args.get('force', '').lower() == 'true'))
        database = body.get('database') or request.args.get('database')
        value = manager.run_single_analyzer(session_id, name, force=force, database=database)
        return jsonify({"analyzer": name.lower(), "result": to_jsonable(value)})

    @app.route('/api/sessions/<session_id>/result', methods=['GET'])
    def get_result(session_id):
        result = manager.get_cached_result(session_id)
        if result is None:
            return _error("No analysis result yet. Run an analysis first.", 404)
        return jsonify(result.to_dict())

    @app.route('/api/sessions/<session_id>/cancel', methods=['POST'])
    def cancel(session_id):
        return jsonify({"cancelled": manager.cancel(session_id)})

    @app.route('/api/sessions/<session_id>', methods=['DELETE'])
    def disconnect(session_id):
        manager.disconnect(session_id)
        return '', 204

    return app


def main():
    logging.basicConfig(
        level=os.environ.get('DB_ANALYSER_LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    manager = SessionManager(load_config())
    manager.start_cleanup()
    app = create_app(manager)
    try:
        app.run(host=os.environ.get('DB_ANALYSER_HOST', '127.0.0.1'),
                port=int(os.environ.get('DB_ANALYSER_PORT', '5000')),
                threaded=True)
    finally:
        manager.close()


if __name__ == '__main__':
    main()
