"""
WSGI entry point for the run admin API (`flask --app wsgi run` or any WSGI server).
"""
import os

from customer_intel import create_app

app = create_app()

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 8080)))
