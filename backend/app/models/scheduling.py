from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    Time,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata


class Businesses(Base):
    __tablename__ = 'businesses'

    name = Column(Text, nullable=False)
    id = Column(Integer, primary_key=True)
    timezone = Column(Text)
    # JSON: {"mon": [["09:00", "18:00"]], ...}
    business_hours = Column(Text, nullable=False, server_default=text("'{}'"))
    auto_confirm = Column(Integer)  # NULL = use global default
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    created_at = Column(DateTime, server_default=func.now())

    services = relationship('Services', back_populates='business', cascade='all, delete-orphan')
    staff = relationship('Staff', back_populates='business', cascade='all, delete-orphan')
    closures = relationship('BusinessClosures', back_populates='business', cascade='all, delete-orphan')
    hours_overrides = relationship('BusinessHoursOverrides', back_populates='business', cascade='all, delete-orphan')
    appointments = relationship('Appointments', back_populates='business')


class BusinessHoursOverrides(Base):
    __tablename__ = 'business_hours_overrides'
    __table_args__ = (
        UniqueConstraint('business_id', 'date'),
    )

    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    date = Column(Date, nullable=False)
    is_open = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    open_time = Column(Text)  # "HH:MM"
    close_time = Column(Text)
    breaks = Column(Text)  # JSON: [{"startTime": "13:00", "endTime": "14:00"}]
    reason = Column(Text)

    business = relationship('Businesses', back_populates='hours_overrides')


class BusinessClosures(Base):
    __tablename__ = 'business_closures'

    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    type = Column(Text, nullable=False, server_default=text("'OTHER'"))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    start_time = Column(Time)  # NULL = from start of start_date
    end_time = Column(Time)  # NULL = until end of end_date
    reason = Column(Text)
    affected_services = Column(Text)  # JSON list of service ids, NULL/[] = all
    recurring_pattern = Column(Text)  # JSON: {"frequency", "interval", "endDate"}
    created_by = Column(Integer)
    created_at = Column(DateTime, server_default=func.now())

    business = relationship('Businesses', back_populates='closures')


class Services(Base):
    __tablename__ = 'services'

    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    duration_min = Column(Integer, nullable=False)
    break_min = Column(Integer, nullable=False, server_default=text('0'))
    price = Column(Float, nullable=False, server_default=text('0'))
    currency = Column(Text, nullable=False, server_default=text("'TRY'"))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    min_advance_hours = Column(Integer, nullable=False, server_default=text('0'))
    max_advance_days = Column(Integer)

    business = relationship('Businesses', back_populates='services')
    appointments = relationship('Appointments', back_populates='service')


class Staff(Base):
    __tablename__ = 'staff'

    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    id = Column(Integer, primary_key=True)
    display_name = Column(Text)
    work_schedule = Column(Text)  # NULL = inherits business hours
    is_active = Column(Integer, nullable=False, server_default=text('1'))

    business = relationship('Businesses', back_populates='staff')
    appointments = relationship('Appointments', back_populates='staff')


class Appointments(Base):
    __tablename__ = 'appointments'
    __table_args__ = (
        Index('ix_appointments_business_date', 'business_id', 'date'),
        Index('ix_appointments_customer_start', 'customer_id', 'start_time'),
        # Last line of defence against double-booking one staff member
        Index(
            'uq_appointments_active_staff_start',
            'business_id', 'staff_id', 'start_time',
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'CONFIRMED')"),
            postgresql_where=text("status IN ('PENDING', 'CONFIRMED')"),
        ),
    )

    business_id = Column(ForeignKey('businesses.id'), nullable=False)
    service_id = Column(ForeignKey('services.id'), nullable=False)
    customer_id = Column(Integer, nullable=False)
    date = Column(Date, nullable=False)
    # Business-local wall time
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'PENDING'"))
    price = Column(Float, nullable=False, server_default=text('0'))
    currency = Column(Text, nullable=False, server_default=text("'TRY'"))
    id = Column(Integer, primary_key=True)
    staff_id = Column(ForeignKey('staff.id'))
    customer_notes = Column(Text)
    internal_notes = Column(Text)
    confirmed_at = Column(DateTime)
    completed_at = Column(DateTime)
    canceled_at = Column(DateTime)
    cancel_reason = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    business = relationship('Businesses', back_populates='appointments')
    service = relationship('Services', back_populates='appointments')
    staff = relationship('Staff', back_populates='appointments')
