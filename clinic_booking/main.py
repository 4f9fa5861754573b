import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_booking.config import LOG_LEVEL, SCHEDULER_ENABLED
from clinic_booking.core.exceptions import BookingError
from clinic_booking.core.scheduler import shutdown_scheduler, start_scheduler
from clinic_booking.database import init_db
from clinic_booking.routers import bookings, notifications, queue, schedules, suggestions

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic Booking API")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(schedules.router)
app.include_router(bookings.router)
app.include_router(queue.router)
app.include_router(suggestions.router)
app.include_router(notifications.router)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    init_db()
    if SCHEDULER_ENABLED:
        start_scheduler()
        logger.info("Reminder scheduler started")


@app.on_event("shutdown")
async def shutdown_event():
    shutdown_scheduler()


@app.get("/")
async def root():
    return {"message": "Welcome to Clinic Booking API"}
