# Overview: Flask extension instances for the SQL-backed entity store.

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
