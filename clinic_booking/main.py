import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from clinic_booking.core import config
from clinic_booking.database import Base, engine, ensure_appointment_schema, ensure_availability_schema
from clinic_booking.models import appointment, availability, doctor, user  # noqa: F401
from clinic_booking.routes import appointment_routes, availability_routes
from clinic_booking.scheduling import events
from clinic_booking.scheduling.tasks import ExpirySweeper

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
)
logger = logging.getLogger(__name__)

config.validate_runtime_config()

app = FastAPI(title='Clinic Booking API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

sweeper = ExpirySweeper()


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.on_event('startup')
def start_background_tasks() -> None:
    events.register_notification_listener(events.log_notification)
    if config.SWEEPER_ENABLED:
        sweeper.start()


@app.on_event('shutdown')
def stop_background_tasks() -> None:
    sweeper.stop()


@app.get('/')
def root():
    return {'status': 'Clinic Booking API Running'}


app.include_router(availability_routes.router, prefix='/availability')
app.include_router(appointment_routes.router, prefix='/appointments')
