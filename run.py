#!/usr/bin/env python3
"""Development server runner"""
import os
from rotaback import create_app

if __name__ == '__main__':
    # Use development config for local testing
    app = create_app('development')

    # No authentication layer: bind to loopback unless told otherwise
    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', 5000))
    app.run(host=host, port=port, debug=True)
