#!/usr/bin/env python
"""
Boxoffice Application Entry Point.
Run this file to start the development server.
"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from boxoffice import create_app

# Create application instance
app = create_app(os.environ.get('FLASK_ENV', 'development'))

if __name__ == '__main__':
    host = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('FLASK_PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'

    print(f"""
    ============================================================
              BOXOFFICE - Development Server
    ============================================================
      Running on: http://{host}:{port}
      Environment: {os.environ.get('FLASK_ENV', 'development')}
      Debug mode: {debug}
    ============================================================
    """)

    app.run(host=host, port=port, debug=debug)
