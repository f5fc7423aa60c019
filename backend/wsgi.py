# backend/wsgi.py
from tableside import create_app

app = create_app()
