# backend/wsgi.py
from presstrack import create_app

app = create_app()
