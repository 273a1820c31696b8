from sqlalchemy import (BigInteger, Boolean, Column, Integer, Numeric, Text, DateTime, ForeignKey, Float, Sequence)
from database import Base

TRIP_ID_SEQ = Sequence("trips_id_seq")


class Trip(Base):
    __tablename__ = "trips"
    id                 = Column(BigInteger, TRIP_ID_SEQ, primary_key=True, index=True)
    device_id          = Column(BigInteger, index=True, nullable=False)
    start_time         = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time           = Column(DateTime(timezone=True), index=True)
    distance_m         = Column(Numeric, default=0)   # sum of point-to-point distances
    max_speed          = Column(Numeric, default=0)   # km/h
    average_speed      = Column(Numeric, default=0)   # km/h, points with speed > 0 only
    trip_duration      = Column(Numeric, default=0)   # seconds
    point_count        = Column(Integer, default=0)
    moving_point_count = Column(Integer, default=0)
    active             = Column(Boolean, default=True, index=True)


class Position(Base):
    __tablename__ = "positions"
    id        = Column(BigInteger, primary_key=True, index=True)
    trip_id   = Column(BigInteger, ForeignKey("trips.id", ondelete="CASCADE"), index=True, nullable=False)
    device_id = Column(BigInteger, index=True, nullable=False)
    lat       = Column(Numeric, nullable=False)
    lon       = Column(Numeric, nullable=False)
    speed_raw = Column(Float)       # device reported, m/s
    speed_kmh = Column(Float)       # conditioned raw speed
    altitude  = Column(Float)
    bearing   = Column(Float)
    accuracy  = Column(Float)
    fix_time  = Column(DateTime(timezone=True), nullable=False, index=True)


class DeviceStatus(Base):
    __tablename__ = "device_status"
    device_id     = Column(BigInteger, primary_key=True)
    name          = Column(Text)
    online        = Column(Boolean, default=True)
    last_seen     = Column(DateTime(timezone=True))
    last_lat      = Column(Numeric)
    last_lon      = Column(Numeric)
    last_accuracy = Column(Float)
    last_provider = Column(Text)     # primary / secondary
