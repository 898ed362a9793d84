# abinsight/models.py
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from .db import Base


class ABTest(Base):
    __tablename__ = "ab_tests"

    id = Column(String, primary_key=True, index=True)
    test_name = Column(String, nullable=False)
    test_status = Column(String, nullable=False, default="draft")  # draft | running | completed
    started_date = Column(DateTime, nullable=True)
    ended_date = Column(DateTime, nullable=True)
    organization_id = Column(String, nullable=True, index=True)
    test_url = Column(String, nullable=True)
    test_type = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)

    # One-to-many: ABTest → Variants
    variants = relationship(
        "Variant",
        back_populates="test",
        cascade="all, delete-orphan",
    )


class Variant(Base):
    __tablename__ = "variants"

    id = Column(String, primary_key=True, index=True)
    ab_test_id = Column(String, ForeignKey("ab_tests.id"), nullable=False)

    variant_name = Column(String, nullable=False)  # e.g. "Control", "B"
    variant_type = Column(String, nullable=False, default="treatment")  # control | treatment
    traffic_percentage = Column(Float, nullable=True)

    test = relationship("ABTest", back_populates="variants")


class Visitor(Base):
    __tablename__ = "visitors"

    id = Column(Integer, primary_key=True, index=True)
    ab_test_id = Column(String, ForeignKey("ab_tests.id"), nullable=False, index=True)
    visitor_id = Column(String, nullable=False)
    assigned_variant_id = Column(String, ForeignKey("variants.id"), nullable=False)
    device_type = Column(String, nullable=True)
    referrer_source = Column(String, nullable=True)
    first_seen_date = Column(DateTime, nullable=True)


class Conversion(Base):
    __tablename__ = "conversions"

    id = Column(Integer, primary_key=True, index=True)
    ab_test_id = Column(String, ForeignKey("ab_tests.id"), nullable=False, index=True)
    visitor_id = Column(String, nullable=False)
    variant_id = Column(String, ForeignKey("variants.id"), nullable=False)
    conversion_date = Column(DateTime, nullable=True)
