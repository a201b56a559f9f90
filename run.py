#!/usr/bin/env python3
"""Run the backup service locally"""
import os
from app import create_app

if __name__ == '__main__':
    # Development config keeps the log, staging area and artifacts under ./data
    app = create_app(os.environ.get('FLASK_ENV', 'development'))

    # With the reloader on, only the child process starts the scheduler
    port = int(os.environ.get('PORT', 5000))
    app.run(host='127.0.0.1', port=port, debug=app.config.get('DEBUG', False))
