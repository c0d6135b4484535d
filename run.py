#!/usr/bin/env python3
"""
Entry points for vmkeeper.

    python run.py                                  development server
    gunicorn -c docker/gunicorn_conf.py            production (uses create_server)
"""
import os
from vmkeeper import create_app


def create_server():
    """WSGI application for Gunicorn; config comes from FLASK_ENV."""
    return create_app()


if __name__ == '__main__':
    app = create_app('development')

    port = int(os.environ.get('PORT', 5000))
    host = os.environ.get('HOST', '127.0.0.1')
    # The reloader would start a second scheduler
    app.run(host=host, port=port, debug=True, use_reloader=False)
