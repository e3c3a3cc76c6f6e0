from sqlalchemy import Column, Integer, String, Float, DateTime, Date, Text
from datetime import datetime
from uuid import uuid4
from .database import Base


def new_id() -> str:
    return uuid4().hex


class UserProfile(Base):
    __tablename__ = 'user_profiles'
    id = Column(String(128), primary_key=True) # Firebase uid
    display_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    farm_name = Column(String(100), nullable=True)
    farm_location = Column(String(200), nullable=True)
    farm_contact = Column(String(100), nullable=True)
    currency = Column(String(3), default="USD")
    created_at = Column(DateTime, default=datetime.utcnow)

class Flock(Base):
    __tablename__ = 'flocks'
    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(128), nullable=False, index=True)
    breed = Column(String(100), nullable=False)
    type = Column(String(10), nullable=False) # 'Broiler', 'Layer'
    count = Column(Integer, nullable=False)
    initial_count = Column(Integer, nullable=False)
    hatch_date = Column(Date, nullable=False)
    average_weight = Column(Float, default=0.0) # kg

    # Ledger-derived aggregates
    total_feed_consumed = Column(Float, default=0.0) # kg
    total_cost = Column(Float, default=0.0)
    egg_production_rate = Column(Float, default=0.0) # percent
    total_eggs_collected = Column(Integer, default=0)
    eggs_in_stock = Column(Integer, default=0) # collected minus sold

class Sale(Base):
    __tablename__ = 'sales'
    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(128), nullable=False, index=True)
    # No foreign key: deleting a flock leaves its sales in place
    flock_id = Column(String(32), nullable=False, index=True)
    sale_type = Column(String(10), default="Birds") # 'Birds', 'Eggs'
    quantity = Column(Integer, nullable=False)
    price_per_unit = Column(Float, nullable=False)
    customer = Column(String(100), nullable=False)
    sale_date = Column(Date, nullable=False)
    total = Column(Float, nullable=False)

class Expenditure(Base):
    __tablename__ = 'expenditures'
    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(128), nullable=False, index=True)
    category = Column(String(30), nullable=False)
    quantity = Column(Float, nullable=False)
    unit_price = Column(Float, nullable=False)
    amount = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    expenditure_date = Column(Date, nullable=False)
    flock_id = Column(String(32), nullable=True, index=True)

class Contact(Base):
    __tablename__ = 'contacts'
    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(128), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    type = Column(String(10), nullable=False) # 'Supplier', 'Buyer'
    contact_person = Column(String(100), nullable=True)
    email = Column(String(255), nullable=False)
    phone = Column(String(30), nullable=True)
    address = Column(Text, nullable=True)
    products = Column(Text, nullable=True)

class SensorReading(Base):
    __tablename__ = 'sensor_readings'
    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(128), nullable=False, index=True)
    temperature = Column(Float, nullable=False) # Celsius
    humidity = Column(Float, nullable=False) # percent
    ammonia_level = Column(Float, nullable=False) # ppm
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
