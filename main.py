import asyncio
import logging
from typing import Callable, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from starlette.concurrency import run_in_threadpool

from ai import AIGateway, consult, generate_meal_plan, list_meal_plans, save_meal_plan
from appointments import AppointmentWorkflow, available_times, filter_by_period
from cart import CartService, cart_total
from catalog import get_medicine, list_medicines, subscribe_medicines
from config import Settings
from errors import AuthError, Forbidden, NotFound, PortalError, StoreUnavailable, ValidationError
from identity import IdentityGateway
from models.appointment_model import AppointmentCreate, StatusUpdate
from models.models import (
    CartItemRequest,
    ConsultRequest,
    LoginRequest,
    MealPlanSaveRequest,
    NutritionRequest,
    ProfileUpdate,
    QuantityChangeRequest,
    SignupRequest,
)
from models.prescription_model import PrescriptionCreate
from mongo import DocumentStore, Subscription, get_database
from prescriptions import PrescriptionWorkflow, search
from profiles import create_profile, fetch_profile, list_doctors, list_patients, update_profile, validate_profile
from records import list_medical_records, patient_summary, subscribe_medical_records
from session import Session

MCP_OPERATIONS = [
    "list_doctors",
    "list_patients",
    "get_patient_records",
    "list_medicines",
    "get_cart",
    "add_to_cart",
    "book_appointment",
    "list_appointments",
    "update_appointment_status",
    "add_prescription",
    "list_prescriptions",
    "update_prescription_status",
    "ai_consult",
]


class Services:
    def __init__(self, store: DocumentStore, identity: IdentityGateway, ai: AIGateway):
        self.store = store
        self.identity = identity
        self.ai = ai
        self.carts = CartService(store)
        self.appointments = AppointmentWorkflow(store)
        self.prescriptions = PrescriptionWorkflow(store)


router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def _bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("Missing token")
    return authorization.split(" ", 1)[1].strip()


def get_session(authorization: Optional[str] = Header(None), services: Services = Depends(get_services)):
    identity = services.identity.current_identity(_bearer(authorization))
    session = Session(identity, services.store, services.identity)
    try:
        session.load_profile()
        yield session
    finally:
        session.close()


def _account_payload(identity, profile) -> dict:
    return {"token": identity.token, "uid": identity.uid, "expires_at": identity.expires_at, "profile": profile}


# ---------- Auth & profile ----------
@router.get("/")
def read_root():
    return {"message": "FelanoCare portal API is running"}


@router.post("/auth/signup", operation_id="signup")
def signup(data: SignupRequest, services: Services = Depends(get_services)):
    validate_profile(data.name, data.userType, data.licenseNumber)
    identity = services.identity.sign_up(data.email, data.password, data.name)
    try:
        profile = create_profile(services.store, identity.uid, data.name, data.email, data.userType,
                                 data.licenseNumber)
    except PortalError:
        logging.error(f"Error in signup: profile for {identity.email} not saved, removing account")
        services.identity.delete_account(identity.uid)
        raise
    return _account_payload(identity, profile)


@router.post("/auth/login", operation_id="login")
def login(data: LoginRequest, services: Services = Depends(get_services)):
    identity = services.identity.sign_in(data.email, data.password)
    return _account_payload(identity, fetch_profile(services.store, identity.uid))


@router.post("/auth/logout", operation_id="logout")
def logout(authorization: Optional[str] = Header(None), services: Services = Depends(get_services)):
    if authorization and authorization.lower().startswith("bearer "):
        services.identity.sign_out(_bearer(authorization))
    return {"ok": True}


@router.get("/me", operation_id="get_profile")
def me(session: Session = Depends(get_session)):
    if session.profile is None:
        raise NotFound("Profile not found")
    return session.profile


@router.put("/me", operation_id="update_profile")
def update_me(data: ProfileUpdate, session: Session = Depends(get_session)):
    return update_profile(session.store, session.uid, data.model_dump(exclude_none=True))


@router.get("/doctors", operation_id="list_doctors")
def doctors(specialization: Optional[str] = None, services: Services = Depends(get_services)):
    return list_doctors(services.store, specialization)


@router.get("/patients", operation_id="list_patients")
def patients(q: str = "", health_status: Optional[str] = None, session: Session = Depends(get_session)):
    session.require("doctor")
    return list_patients(session.store, q, health_status)


def _patient_or_404(store: DocumentStore, patient_id: str) -> dict:
    patient = fetch_profile(store, patient_id)
    if not patient or patient.get("userType") != "patient":
        raise NotFound("Patient not found")
    return patient


@router.get("/patients/{patient_id}/records", operation_id="get_patient_records")
def patient_records(patient_id: str, session: Session = Depends(get_session)):
    session.require("doctor")
    patient = _patient_or_404(session.store, patient_id)
    return {"patient": patient, **patient_summary(list_medical_records(session.store, patient_id))}


# ---------- Medicines & cart ----------
@router.get("/medicines", operation_id="list_medicines")
def medicines(services: Services = Depends(get_services)):
    return list_medicines(services.store)


@router.get("/medicines/{medicine_id}", operation_id="get_medicine")
def medicine(medicine_id: str, services: Services = Depends(get_services)):
    return get_medicine(services.store, medicine_id)


def _cart_payload(items: List[dict]) -> dict:
    return {"items": items, "count": sum(i.get("quantity", 0) for i in items), "total": cart_total(items)}


@router.get("/cart", operation_id="get_cart")
def get_cart(session: Session = Depends(get_session), services: Services = Depends(get_services)):
    return _cart_payload(services.carts.list_items(session.uid))


@router.post("/cart/items", operation_id="add_to_cart")
def add_to_cart(item: CartItemRequest, session: Session = Depends(get_session),
                services: Services = Depends(get_services)):
    medicine = get_medicine(services.store, item.id)
    added = services.carts.add_item(session.uid, medicine)
    return {"message": f"{added['name']} added to cart", "status": "success", "item": added}


@router.patch("/cart/items/{item_id}", operation_id="change_cart_quantity")
def change_quantity(item_id: str, data: QuantityChangeRequest, session: Session = Depends(get_session),
                    services: Services = Depends(get_services)):
    return services.carts.change_quantity(session.uid, item_id, data.delta)


@router.delete("/cart/items/{item_id}", operation_id="remove_from_cart")
def remove_from_cart(item_id: str, session: Session = Depends(get_session),
                     services: Services = Depends(get_services)):
    services.carts.remove_item(session.uid, item_id)
    return {"message": "Item removed", "status": "success"}


# ---------- Appointments ----------
@router.get("/appointments/available-times", operation_id="available_times")
def appointment_times():
    return {"times": available_times()}


@router.post("/appointments", operation_id="book_appointment")
def book_appointment(data: AppointmentCreate, session: Session = Depends(get_session),
                     services: Services = Depends(get_services)):
    session.require("patient")
    doctor = fetch_profile(services.store, data.doctor_id) if data.doctor_id.strip() else None
    if data.doctor_id.strip() and (not doctor or doctor.get("userType") != "doctor"):
        raise NotFound("Doctor not found")
    appointment = services.appointments.book_appointment(
        patient_id=session.uid,
        doctor_id=data.doctor_id,
        date=data.date,
        time=data.time,
        reason=data.reason,
        patient_name=session.name or "Unknown",
        doctor_name=data.doctor_name or (doctor or {}).get("name"),
    )
    return {"message": "Appointment booked successfully", "status": "success", "appointment": appointment}


@router.get("/appointments", operation_id="list_appointments")
def list_appointments(period: str = "all", session: Session = Depends(get_session),
                      services: Services = Depends(get_services)):
    if session.user_type == "doctor":
        appointments = services.appointments.for_doctor(session.uid)
    else:
        appointments = services.appointments.for_patient(session.uid)
    return filter_by_period(appointments, period)


@router.get("/appointments/{appointment_id}", operation_id="get_appointment")
def get_appointment(appointment_id: str, session: Session = Depends(get_session),
                    services: Services = Depends(get_services)):
    appointment = services.appointments.get(appointment_id)
    if session.uid not in (appointment.get("doctorId"), appointment.get("patientId")):
        raise Forbidden("Not your appointment")
    return appointment


@router.patch("/appointments/{appointment_id}/status", operation_id="update_appointment_status")
def update_appointment_status(appointment_id: str, data: StatusUpdate, session: Session = Depends(get_session),
                              services: Services = Depends(get_services)):
    session.require("doctor")
    return services.appointments.set_status(appointment_id, data.status, doctor_id=session.uid)


# ---------- Prescriptions ----------
@router.post("/prescriptions", operation_id="add_prescription")
def add_prescription(data: PrescriptionCreate, session: Session = Depends(get_session),
                     services: Services = Depends(get_services)):
    session.require("doctor")
    prescription = services.prescriptions.create_prescription(
        doctor_id=session.uid,
        patient_name=data.patient_name,
        medicines=[m.model_dump(exclude_none=True) for m in data.medicines],
        instructions=data.instructions,
        patient_id=data.patient_id,
        doctor_name=session.name,
    )
    return {"message": "Prescription created successfully", "status": "success", "prescription": prescription}


@router.get("/prescriptions", operation_id="list_prescriptions")
def list_prescriptions(status: Optional[str] = None, q: str = "", session: Session = Depends(get_session),
                       services: Services = Depends(get_services)):
    if session.user_type == "doctor":
        prescriptions = services.prescriptions.for_doctor(session.uid)
    else:
        prescriptions = services.prescriptions.for_patient(session.uid)
    return search(prescriptions, status, q)


@router.get("/prescriptions/{prescription_id}", operation_id="get_prescription")
def get_prescription(prescription_id: str, session: Session = Depends(get_session),
                     services: Services = Depends(get_services)):
    prescription = services.prescriptions.get(prescription_id)
    if session.uid not in (prescription.get("doctorId"), prescription.get("patientId")):
        raise Forbidden("Not your prescription")
    return prescription


@router.patch("/prescriptions/{prescription_id}/status", operation_id="update_prescription_status")
def update_prescription_status(prescription_id: str, data: StatusUpdate, session: Session = Depends(get_session),
                               services: Services = Depends(get_services)):
    session.require("doctor")
    return services.prescriptions.set_status(prescription_id, data.status, doctor_id=session.uid)


# ---------- AI ----------
@router.post("/ai/consult", operation_id="ai_consult")
def ai_consult(data: ConsultRequest, session: Session = Depends(get_session),
               services: Services = Depends(get_services)):
    return consult(services.ai, session.name, data.history, data.query)


@router.post("/ai/meal-plan", operation_id="generate_meal_plan")
def meal_plan(data: NutritionRequest, session: Session = Depends(get_session),
              services: Services = Depends(get_services)):
    return generate_meal_plan(services.ai, data.model_dump())


@router.post("/ai/meal-plans", operation_id="save_meal_plan")
def store_meal_plan(data: MealPlanSaveRequest, session: Session = Depends(get_session),
                    services: Services = Depends(get_services)):
    return save_meal_plan(session.store, session.uid, session.name, data.model_dump())


@router.get("/ai/meal-plans", operation_id="list_meal_plans")
def meal_plans(session: Session = Depends(get_session)):
    return list_meal_plans(session.store, session.uid)


# ---------- Live views ----------
def _open_view(services: Services, session: Session, view: str, push: Callable[[List[dict]], None],
               patient_id: str = "") -> Subscription:
    if view == "cart":
        return services.carts.subscribe(session.uid, push)
    if view == "medicines":
        return subscribe_medicines(services.store, push)
    if view == "appointments":
        if session.user_type == "doctor":
            return services.appointments.subscribe_for_doctor(session.uid, push)
        return services.appointments.subscribe_for_patient(session.uid, push)
    if view == "prescriptions":
        if session.user_type == "doctor":
            return services.prescriptions.subscribe_for_doctor(session.uid, push)
        return services.prescriptions.subscribe_for_patient(session.uid, push)
    if view == "records":
        session.require("doctor")
        _patient_or_404(services.store, patient_id)
        return subscribe_medical_records(services.store, patient_id, push)
    raise ValidationError(f"Unknown view '{view}'")


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/{view}")
async def live_view(websocket: WebSocket, view: str, token: str = "", patient_id: str = ""):
    """
    Push a full snapshot of `view` on connect and after every change.
    The subscription lives exactly as long as the connection or the session.
    """
    services: Services = websocket.app.state.services
    try:
        identity = await run_in_threadpool(services.identity.current_identity, token)
    except PortalError as e:
        logging.info(f"Rejected live view {view}: {e.message}")
        await websocket.close(code=1008)
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    signed_out = object()

    def push(snapshot):
        loop.call_soon_threadsafe(queue.put_nowait, snapshot)

    def on_auth_change(event):
        if event.identity is None and event.token == identity.token:
            loop.call_soon_threadsafe(queue.put_nowait, signed_out)

    auth_subscription = services.identity.on_auth_change(on_auth_change)
    session = Session(identity, services.store, services.identity)
    disconnect = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        await run_in_threadpool(session.load_profile)
        try:
            subscription = await run_in_threadpool(_open_view, services, session, view, push, patient_id)
        except PortalError as e:
            await websocket.send_json({"message": e.message, "status": "failed"})
            await websocket.close()
            return
        session.track(subscription)

        while True:
            next_item = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({next_item, disconnect}, return_when=asyncio.FIRST_COMPLETED)
            if disconnect in done:
                next_item.cancel()
                return
            snapshot = next_item.result()
            if snapshot is signed_out:
                await websocket.close(code=1000)
                return
            await websocket.send_json(jsonable_encoder({"view": view, "items": snapshot}))
    finally:
        disconnect.cancel()
        auth_subscription.unsubscribe()
        session.close()


# ---------- App ----------
def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    identity: Optional[IdentityGateway] = None,
    ai: Optional[AIGateway] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    store = store or DocumentStore(get_database(settings))
    identity = identity or IdentityGateway(store, settings.session_ttl_hours)
    ai = ai or AIGateway(settings.openai_api_key, settings.openai_model, settings.ai_temperature)

    app = FastAPI(title="FelanoCare Portal API")
    app.state.services = Services(store, identity, ai)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PortalError)
    async def portal_error_handler(request: Request, exc: PortalError):
        if isinstance(exc, StoreUnavailable):
            logging.error(f"Error in {request.url.path}: {exc.message}")
        else:
            logging.info(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message, "status": "failed"})

    app.include_router(router)

    if settings.mcp_enabled:
        mcp = FastApiMCP(app, include_operations=MCP_OPERATIONS)
        mcp.mount_http()
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000, reload=False)
