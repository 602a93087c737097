# models/request_counter.py
from db import db


class RequestCounter(db.Model):
    """Fixed-window request count for one client key (e.g. 'ip:203.0.113.9')."""
    __tablename__ = "request_counters"

    key          = db.Column(db.String(191), primary_key=True)
    window_start = db.Column(db.DateTime, nullable=False)
    count        = db.Column(db.Integer, nullable=False, default=0)
