import json
import logging
import time
import uuid
from datetime import datetime
from typing import List, Optional

from flask_sqlalchemy import SQLAlchemy

from parcel_locator.core.metrics import db_operations, db_query_time
from parcel_locator.core.types import Coordinates, LocalizationResult, SearchZone, ZoneConstraints

logger = logging.getLogger(__name__)

db = SQLAlchemy()


class LocalizationRecord(db.Model):
    """One localisation request and its ranked result"""
    __tablename__ = 'localization_records'

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.String(36), unique=True, nullable=False, index=True)
    # Set on relaunches: the request whose candidates are being extended
    root_request_id = db.Column(db.String(36), index=True)
    expansion_level = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    center_lat = db.Column(db.Float, nullable=False)
    center_lng = db.Column(db.Float, nullable=False)
    radius_meters = db.Column(db.Float, nullable=False)
    postal_codes = db.Column(db.Text)  # comma separated
    communes = db.Column(db.Text)

    status = db.Column(db.String(20), nullable=False)  # success, no_match
    source = db.Column(db.String(20), nullable=False)  # EXIF, VISUAL_MATCH
    candidate_count = db.Column(db.Integer, nullable=False, default=0)
    top_score = db.Column(db.Integer)
    top_address = db.Column(db.Text)
    timed_out = db.Column(db.Boolean, nullable=False, default=False)
    result_json = db.Column(db.Text, nullable=False)

    @property
    def data(self):
        """Get result_json as a dictionary"""
        try:
            return json.loads(self.result_json)
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def zone(self) -> SearchZone:
        """The search zone this record was run on"""
        return SearchZone(
            center=Coordinates(self.center_lat, self.center_lng),
            radius_meters=self.radius_meters,
            constraints=ZoneConstraints(
                postal_codes=tuple(c for c in (self.postal_codes or '').split(',') if c),
                communes=tuple(c for c in (self.communes or '').split(',') if c),
            ),
        )

    @classmethod
    def from_result(cls, result: LocalizationResult, zone: SearchZone,
                    root_request_id: Optional[str] = None, expansion_level: int = 0):
        best = result.best
        return cls(
            request_id=str(uuid.uuid4()),
            root_request_id=root_request_id,
            expansion_level=expansion_level,
            center_lat=zone.center.lat,
            center_lng=zone.center.lng,
            radius_meters=zone.radius_meters,
            postal_codes=','.join(zone.constraints.postal_codes),
            communes=','.join(zone.constraints.communes),
            status=result.status,
            source=result.source,
            candidate_count=len(result.candidates),
            top_score=best.global_score if best else None,
            top_address=best.candidate.address if best else None,
            timed_out=result.timed_out,
            result_json=json.dumps(result.to_dict(), default=str),
        )

    @classmethod
    def save_result(cls, result: LocalizationResult, zone: SearchZone,
                    root_request_id: Optional[str] = None, expansion_level: int = 0):
        """Persist a result. Returns the record, or None when the database write failed."""
        start_time = time.time()
        record = cls.from_result(result, zone, root_request_id, expansion_level)
        try:
            db.session.add(record)
            db.session.commit()
            db_operations.labels(operation='create', table=cls.__tablename__, status='success').inc()
            return record
        except Exception as e:
            db.session.rollback()
            db_operations.labels(operation='create', table=cls.__tablename__, status='error').inc()
            logger.error(f"Error saving localisation result: {e}")
            return None
        finally:
            db_query_time.labels(operation='create', table=cls.__tablename__).observe(time.time() - start_time)

    @classmethod
    def recent(cls, limit=20):
        """Most recent records first"""
        start_time = time.time()
        try:
            records = cls.query.order_by(cls.created_at.desc(), cls.id.desc()).limit(limit).all()
            db_operations.labels(operation='read', table=cls.__tablename__, status='success').inc()
            return records
        except Exception:
            db_operations.labels(operation='read', table=cls.__tablename__, status='error').inc()
            raise
        finally:
            db_query_time.labels(operation='read', table=cls.__tablename__).observe(time.time() - start_time)

    @classmethod
    def find(cls, request_id: str) -> Optional["LocalizationRecord"]:
        start_time = time.time()
        try:
            record = cls.query.filter_by(request_id=request_id).first()
            db_operations.labels(operation='read', table=cls.__tablename__, status='success').inc()
            return record
        except Exception:
            db_operations.labels(operation='read', table=cls.__tablename__, status='error').inc()
            raise
        finally:
            db_query_time.labels(operation='read', table=cls.__tablename__).observe(time.time() - start_time)

    @classmethod
    def runs_for(cls, root_request_id: str) -> List["LocalizationRecord"]:
        """The original request and all its relaunches, oldest first"""
        start_time = time.time()
        try:
            records = cls.query.filter(
                db.or_(cls.request_id == root_request_id, cls.root_request_id == root_request_id)
            ).order_by(cls.created_at.asc(), cls.id.asc()).all()
            db_operations.labels(operation='read', table=cls.__tablename__, status='success').inc()
            return records
        except Exception:
            db_operations.labels(operation='read', table=cls.__tablename__, status='error').inc()
            raise
        finally:
            db_query_time.labels(operation='read', table=cls.__tablename__).observe(time.time() - start_time)

    def to_summary(self):
        return {
            'request_id': self.request_id,
            'root_request_id': self.root_request_id,
            'expansion_level': self.expansion_level,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'zone': {
                'center': {'lat': self.center_lat, 'lng': self.center_lng},
                'radius_meters': self.radius_meters,
                'postal_codes': list(self.zone.constraints.postal_codes),
                'communes': list(self.zone.constraints.communes),
            },
            'status': self.status,
            'source': self.source,
            'candidate_count': self.candidate_count,
            'top_score': self.top_score,
            'top_address': self.top_address,
            'timed_out': self.timed_out,
        }

    def __repr__(self):
        return f'<LocalizationRecord {self.request_id} {self.status}>'
