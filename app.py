from datetime import datetime
import json
import logging
import os
import secrets
import time
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Form, HTTPException, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from itsdangerous import BadSignature, URLSafeSerializer
from pydantic import BaseModel
from sqlmodel import Session
import stripe

from db import SIGNAL_STATUSES, SIGNAL_TYPES, User, engine, init_db
from errors import ServiceError
from plans import PLANS, get_plan_details, normalize_plan_type
import auth_service
import purchase_service
import signal_service
import support_service

SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_TO_A_LONG_RANDOM_SECRET")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

AUTH_COOKIE = "sd_auth"
CSRF_COOKIE = "sd_csrf"
STAFF_COOKIE = "sd_staff"
STAFF_LOGIN_PATHS = {"admin": "/admin", "customer_service": "/customer-service"}

app = FastAPI(title="SignalDesk")
app.mount("/static", StaticFiles(directory=os.path.join(BASE_DIR, "static")), name="static")
templates = Jinja2Templates(directory=os.path.join(BASE_DIR, "templates"))

cookie_signer = URLSafeSerializer(SECRET_KEY, salt="auth")
csrf_signer = URLSafeSerializer(SECRET_KEY, salt="csrf")
staff_signer = URLSafeSerializer(SECRET_KEY, salt="staff")

logging.basicConfig(level=logging.INFO)
login_attempts = {}


def _now():
    return time.time()


def is_rate_limited(key: str, limit: int = 5, window_seconds: int = 600):
    now = _now()
    attempts = [t for t in login_attempts.get(key, []) if now - t < window_seconds]
    login_attempts[key] = attempts
    return len(attempts) >= limit


def record_attempt(key: str):
    login_attempts.setdefault(key, []).append(_now())


def clear_attempts(key: str):
    login_attempts.pop(key, None)


def client_ip(request: Request):
    return request.client.host if request.client else "unknown"


def _set_cookie(resp: Response, name: str, value: str, max_age: int, httponly: bool = True):
    resp.set_cookie(name, value, httponly=httponly, samesite="lax", secure=COOKIE_SECURE, max_age=max_age, path="/")


def set_auth_cookie(resp: Response, user_id: int):
    _set_cookie(resp, AUTH_COOKIE, cookie_signer.dumps({"user_id": user_id}), 60 * 60 * 24 * 30)


def set_staff_cookie(resp: Response, user_id: int, role: str):
    _set_cookie(resp, STAFF_COOKIE, staff_signer.dumps({"user_id": user_id, "role": role}), 60 * 60 * 8)


def get_user_id_from_request(request: Request):
    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        return None
    try:
        data = cookie_signer.loads(token)
        return int(data.get("user_id"))
    except (BadSignature, ValueError, TypeError, AttributeError):
        return None


def get_staff_role_from_request(request: Request, user_id: int):
    token = request.cookies.get(STAFF_COOKIE)
    if not token:
        return None
    try:
        data = staff_signer.loads(token)
    except BadSignature:
        return None
    if not isinstance(data, dict) or data.get("user_id") != user_id:
        return None
    return data.get("role")


def get_or_set_csrf_token(request: Request):
    token = request.cookies.get(CSRF_COOKIE)
    if token:
        try:
            csrf_signer.loads(token)
            return token
        except BadSignature:
            pass
    return csrf_signer.dumps(secrets.token_urlsafe(16))


def validate_csrf(request: Request, form_token: str | None):
    cookie_token = request.cookies.get(CSRF_COOKIE)
    if not form_token or not cookie_token:
        return False
    if not secrets.compare_digest(form_token, cookie_token):
        return False
    try:
        csrf_signer.loads(form_token)
    except BadSignature:
        return False
    return True


def render_template(template: str, context: dict, status_code: int = 200):
    request = context["request"]
    token = get_or_set_csrf_token(request)
    context["csrf_token"] = token
    context.setdefault("user", None)
    context.setdefault("error", None)
    resp = templates.TemplateResponse(request, template, context, status_code=status_code)
    _set_cookie(resp, CSRF_COOKIE, token, 60 * 60 * 6, httponly=False)
    return resp


def get_current_user(request: Request, session: Session):
    user_id = get_user_id_from_request(request)
    if not user_id:
        return None
    user = session.get(User, user_id)
    if not user or not user.is_active:
        return None
    return user


def get_staff_user(request: Request, session: Session, role: str):
    """Signed-in user who passed the PIN step for ``role``; admins may use every console."""
    user = get_current_user(request, session)
    if not user:
        return None
    allowed = ("admin",) if role == "admin" else ("admin", "customer_service")
    if user.role not in allowed:
        return None
    staff_role = get_staff_role_from_request(request, user.id)
    if staff_role != user.role:
        return None
    return user


def to_login(path: str = "/signin"):
    return RedirectResponse(url=path, status_code=303)


def back_to(path: str, error: str | None = None):
    if error:
        path = f"{path}?{urlencode({'error': error})}"
    return RedirectResponse(url=path, status_code=303)


def get_session():
    with Session(engine) as session:
        yield session


def api_user(request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        raise HTTPException(status_code=401, detail="Not signed in")
    return user


def api_admin(request: Request, session: Session = Depends(get_session)):
    user = api_user(request, session)
    if get_staff_user(request, session, "admin") is None:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def api_csrf(request: Request):
    if not validate_csrf(request, request.headers.get("x-csrf-token")):
        raise HTTPException(status_code=403, detail="Missing or invalid CSRF token")


@app.on_event("startup")
def on_startup():
    init_db()


@app.middleware("http")
async def security_headers(request: Request, call_next):
    resp = await call_next(request)
    resp.headers["X-Frame-Options"] = "DENY"
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    return resp


@app.exception_handler(ServiceError)
def service_error(request: Request, exc: ServiceError):
    logging.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(404)
def not_found(request: Request, exc):
    if request.url.path.startswith("/api/"):
        return JSONResponse(status_code=404, content={"error": getattr(exc, "detail", "Not found")})
    return render_template("404.html", {"request": request}, status_code=404)


@app.exception_handler(500)
def server_error(request: Request, exc):
    logging.exception("Unhandled error on %s", request.url.path)
    if request.url.path.startswith("/api/"):
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    return render_template("500.html", {"request": request}, status_code=500)


# Public pages


@app.get("/", response_class=HTMLResponse)
def home(request: Request):
    with Session(engine) as session:
        user = get_current_user(request, session)
        return render_template("index.html", {"request": request, "user": user, "plans": PLANS})


@app.get("/membership", response_class=HTMLResponse)
def membership_page(request: Request):
    with Session(engine) as session:
        user = get_current_user(request, session)
        return render_template("membership.html", {"request": request, "user": user, "plans": PLANS})


@app.get("/pricing")
def pricing_page():
    return RedirectResponse(url="/membership", status_code=303)


@app.get("/signup", response_class=HTMLResponse)
def signup_page(request: Request, plan: str = "starter"):
    return render_template("signup.html", {"request": request, "plans": PLANS, "selected_plan": normalize_plan_type(plan)})


@app.get("/register")
def register_page():
    return RedirectResponse(url="/signup", status_code=303)


@app.post("/signup", response_class=HTMLResponse)
def signup(
    request: Request,
    csrf_token: str = Form(""),
    first_name: str = Form(...),
    last_name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    plan_type: str = Form("starter"),
):
    context = {"request": request, "plans": PLANS, "selected_plan": normalize_plan_type(plan_type)}
    if not validate_csrf(request, csrf_token):
        return render_template("signup.html", {**context, "error": "Session expired. Please try again."})
    key = f"signup:{client_ip(request)}"
    if is_rate_limited(key, limit=6):
        return render_template("signup.html", {**context, "error": "Too many attempts. Try again later."})
    record_attempt(key)

    with Session(engine) as session:
        try:
            result = auth_service.sign_up(session, email, password, first_name, last_name, plan_type)
        except ServiceError as exc:
            return render_template("signup.html", {**context, "error": exc.message})

    resp = RedirectResponse(url=f"/payment-flow?plan={result['plan_type']}", status_code=303)
    set_auth_cookie(resp, result["id"])
    return resp


@app.get("/signin", response_class=HTMLResponse)
def signin_page(request: Request):
    return render_template("signin.html", {"request": request})


@app.get("/login")
def login_page():
    return RedirectResponse(url="/signin", status_code=303)


@app.post("/signin", response_class=HTMLResponse)
def signin(
    request: Request,
    csrf_token: str = Form(""),
    email: str = Form(...),
    password: str = Form(...),
):
    if not validate_csrf(request, csrf_token):
        return render_template("signin.html", {"request": request, "error": "Session expired. Please try again."})
    key = f"signin:{client_ip(request)}"
    if is_rate_limited(key):
        return render_template("signin.html", {"request": request, "error": "Too many attempts. Try again later."})

    with Session(engine) as session:
        try:
            result = auth_service.sign_in(session, email, password)
        except ServiceError as exc:
            record_attempt(key)
            return render_template("signin.html", {"request": request, "error": exc.message})

    clear_attempts(key)
    resp = RedirectResponse(url="/dashboard", status_code=303)
    set_auth_cookie(resp, result["user"].id)
    return resp


@app.get("/logout")
def logout():
    resp = RedirectResponse(url="/", status_code=303)
    resp.delete_cookie(AUTH_COOKIE, path="/")
    resp.delete_cookie(STAFF_COOKIE, path="/")
    return resp


# Customer pages


@app.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request, signal_type: str = ""):
    with Session(engine) as session:
        user = get_current_user(request, session)
        if not user:
            return to_login()

        info = auth_service.get_user_profile(session, user.id)
        has_access, subscription, access_message = signal_service.check_user_signal_access(session, user.id)
        signals = []
        if has_access:
            if signal_type in SIGNAL_TYPES:
                signals = signal_service.get_signals_by_type(session, signal_type, user.id)
            else:
                signals = signal_service.get_active_signals(session, user.id)
        history = signal_service.get_user_signal_history(session, user.id)[:10]
        purchases = purchase_service.get_user_purchases(session, user, user.id)
        return render_template(
            "dashboard.html",
            {
                "request": request,
                "user": user,
                "profile": info["profile"],
                "subscription": subscription or info["subscription"],
                "has_access": has_access,
                "access_message": access_message,
                "signals": signals,
                "signal_types": SIGNAL_TYPES,
                "signal_type": signal_type,
                "history": history,
                "purchases": purchases,
            },
        )


@app.get("/account", response_class=HTMLResponse)
def account_page(request: Request):
    with Session(engine) as session:
        user = get_current_user(request, session)
        if not user:
            return to_login()
        info = auth_service.get_user_profile(session, user.id)
        return render_template("account.html", {"request": request, "user": user, "profile": info["profile"]})


@app.post("/account", response_class=HTMLResponse)
def account_update(
    request: Request,
    csrf_token: str = Form(""),
    phone: str = Form(""),
    country: str = Form(""),
    timezone: str = Form("UTC"),
    account_type: str = Form("personal"),
    risk_tolerance: str = Form("moderate"),
    setup_complete: bool = Form(False),
):
    with Session(engine) as session:
        user = get_current_user(request, session)
        if not user:
            return to_login()
        if not validate_csrf(request, csrf_token):
            return RedirectResponse(url="/account", status_code=303)
        try:
            auth_service.update_profile(session, user.id, phone, country, timezone, account_type, risk_tolerance)
            if setup_complete:
                auth_service.complete_setup(session, user.id)
        except ServiceError as exc:
            profile = auth_service.get_user_profile(session, user.id)["profile"]
            return render_template("account.html", {"request": request, "user": user, "profile": profile, "error": exc.message})
    return RedirectResponse(url="/account", status_code=303)


@app.get("/payment-flow", response_class=HTMLResponse)
def payment_flow_page(request: Request, plan: str = "starter"):
    with Session(engine) as session:
        user = get_current_user(request, session)
        if not user:
            return to_login()
        return render_template(
            "payment_flow.html",
            {
                "request": request,
                "user": user,
                "plan": get_plan_details(plan),
                "canceled": request.query_params.get("canceled") == "1",
            },
        )


@app.post("/payment-flow", response_class=HTMLResponse)
def payment_flow(
    request: Request,
    csrf_token: str = Form(""),
    plan_type: str = Form("starter"),
    payment_method: str = Form("stripe"),
    transaction_id: str = Form(""),
):
    plan = get_plan_details(plan_type)
    with Session(engine) as session:
        user = get_current_user(request, session)
        if not user:
            return to_login()
        context = {"request": request, "user": user, "plan": plan, "canceled": False}
        key = f"checkout:{client_ip(request)}"
        if is_rate_limited(key, limit=6):
            return render_template("payment_flow.html", {**context, "error": "Too many attempts. Try again later."})
        if not validate_csrf(request, csrf_token):
            return render_template("payment_flow.html", {**context, "error": "Session expired. Please try again."})
        record_attempt(key)

        try:
            if plan["price"] == 0:
                purchase_service.activate_free_plan(session, user, plan["plan_type"])
                return RedirectResponse(url=f"/successful-payment?plan={plan['plan_type']}", status_code=303)
            if payment_method == "stripe":
                checkout_session = purchase_service.create_stripe_checkout(session, user, plan["plan_type"])
                return RedirectResponse(url=checkout_session.url, status_code=303)
            purchase_service.submit_manual_payment(session, user, plan["plan_type"], payment_method, transaction_id)
        except ServiceError as exc:
            return render_template("payment_flow.html", {**context, "error": exc.message})
        except stripe.StripeError:
            logging.exception("Stripe checkout failed for user %s", user.id)
            return render_template("payment_flow.html", {**context, "error": "Payment provider unavailable. Please try again."})

    return RedirectResponse(url=f"/successful-payment?plan={plan['plan_type']}&pending=1", status_code=303)


@app.get("/successful-payment", response_class=HTMLResponse)
def successful_payment_page(request: Request, plan: str = "starter", pending: int = 0):
    with Session(engine) as session:
        user = get_current_user(request, session)
        return render_template(
            "successful_payment.html",
            {"request": request, "user": user, "plan": get_plan_details(plan), "pending": bool(pending)},
        )


@app.post("/stripe/webhook")
async def stripe_webhook(request: Request):
    if not purchase_service.STRIPE_WEBHOOK_SECRET:
        return Response(status_code=400)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        stripe.Webhook.construct_event(payload, sig_header, purchase_service.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError):
        logging.warning("Rejected Stripe webhook with bad payload or signature")
        return Response(status_code=400)

    event = json.loads(payload)
    with Session(engine) as session:
        purchase = purchase_service.handle_stripe_event(session, event)
        if purchase:
            logging.info("Stripe event %s produced purchase %s", event.get("id"), purchase.id)
    return Response(status_code=200)


# Staff consoles


def staff_login_page(request: Request, role: str, error: str | None = None):
    return render_template("staff_login.html", {"request": request, "role": role, "action": STAFF_LOGIN_PATHS[role], "error": error})


def staff_login(request: Request, role: str, csrf_token: str, email: str, password: str, mpin: str):
    if not validate_csrf(request, csrf_token):
        return staff_login_page(request, role, "Session expired. Please try again.")
    key = f"staff:{role}:{client_ip(request)}"
    if is_rate_limited(key, limit=5):
        return staff_login_page(request, role, "Too many attempts. Try again later.")

    with Session(engine) as session:
        try:
            result = auth_service.sign_in(session, email, password)
        except ServiceError as exc:
            record_attempt(key)
            return staff_login_page(request, role, exc.message)
    user = result["user"]
    allowed = ("admin",) if role == "admin" else ("admin", "customer_service")
    if user.role not in allowed or not auth_service.verify_staff_pin(user.role, mpin):
        record_attempt(key)
        logging.warning("Staff login refused for user %s on %s console", user.id, role)
        return staff_login_page(request, role, "Invalid credentials or PIN.")

    clear_attempts(key)
    target = "/admin/dashboard" if role == "admin" else "/customer-service/dashboard"
    resp = RedirectResponse(url=target, status_code=303)
    set_auth_cookie(resp, user.id)
    set_staff_cookie(resp, user.id, user.role)
    logging.info("Staff user %s signed in to %s console", user.id, role)
    return resp


@app.get("/admin", response_class=HTMLResponse)
def admin_login_page(request: Request):
    return staff_login_page(request, "admin")


@app.post("/admin", response_class=HTMLResponse)
def admin_login(
    request: Request,
    csrf_token: str = Form(""),
    email: str = Form(...),
    password: str = Form(...),
    mpin: str = Form(...),
):
    return staff_login(request, "admin", csrf_token, email, password, mpin)


@app.get("/admin/logout")
def admin_logout():
    resp = RedirectResponse(url="/admin", status_code=303)
    resp.delete_cookie(STAFF_COOKIE, path="/")
    return resp


@app.get("/admin/dashboard", response_class=HTMLResponse)
def admin_dashboard(request: Request, show: str = "unread"):
    with Session(engine) as session:
        admin = get_staff_user(request, session, "admin")
        if not admin:
            return to_login("/admin")
        include_read = show == "all"
        notifications = purchase_service.get_admin_notifications(session, admin, include_read=include_read)
        return render_template(
            "admin_dashboard.html",
            {
                "request": request,
                "user": admin,
                "notifications": notifications,
                "include_read": include_read,
                "unread_count": sum(1 for n in notifications if not n["is_read"]),
                "signals": signal_service.get_all_signals(session, admin),
                "purchases": purchase_service.get_recent_purchases(session, admin),
                "signal_types": SIGNAL_TYPES,
                "signal_statuses": SIGNAL_STATUSES,
                "error": request.query_params.get("error"),
            },
        )


@app.post("/admin/notifications/{notification_id}/read")
def admin_mark_read(request: Request, notification_id: int, csrf_token: str = Form("")):
    with Session(engine) as session:
        admin = get_staff_user(request, session, "admin")
        if not admin:
            return to_login("/admin")
        if validate_csrf(request, csrf_token):
            try:
                purchase_service.mark_notification_as_read(session, admin, notification_id)
            except ServiceError as exc:
                return back_to("/admin/dashboard", exc.message)
    return back_to("/admin/dashboard")


@app.post("/admin/signals", response_class=HTMLResponse)
def admin_create_signal(
    request: Request,
    csrf_token: str = Form(""),
    signal_type: str = Form("crypto"),
    symbol: str = Form(...),
    currency_pair: str = Form(""),
    timeframe: str = Form(...),
    direction: str = Form(...),
    entry_price: str = Form(...),
    stop_loss: str = Form(...),
    take_profit: str = Form(...),
    pips_at_risk: str = Form(""),
    confidence: str = Form(""),
    analysis: str = Form(""),
    ict_concepts: str = Form(""),
):
    with Session(engine) as session:
        admin = get_staff_user(request, session, "admin")
        if not admin:
            return to_login("/admin")
        if not validate_csrf(request, csrf_token):
            return RedirectResponse(url="/admin/dashboard", status_code=303)
        try:
            signal_service.create_signal(
                session,
                admin,
                symbol=symbol,
                timeframe=timeframe,
                direction=direction,
                entry_price=entry_price,
                stop_loss=stop_loss,
                take_profit=take_profit,
                signal_type=signal_type,
                currency_pair=currency_pair,
                pips_at_risk=pips_at_risk,
                confidence=confidence,
                analysis=analysis,
                ict_concepts=ict_concepts.split(","),
            )
        except ServiceError as exc:
            return back_to("/admin/dashboard", exc.message)
    return back_to("/admin/dashboard")


@app.post("/admin/signals/{signal_id}/status")
def admin_signal_status(request: Request, signal_id: int, csrf_token: str = Form(""), status: str = Form(...)):
    with Session(engine) as session:
        admin = get_staff_user(request, session, "admin")
        if not admin:
            return to_login("/admin")
        if validate_csrf(request, csrf_token):
            try:
                signal_service.update_signal_status(session, admin, signal_id, status)
            except ServiceError as exc:
                return back_to("/admin/dashboard", exc.message)
    return back_to("/admin/dashboard")


@app.post("/admin/purchases/{purchase_id}/{decision}")
def admin_purchase_decision(request: Request, purchase_id: int, decision: str, csrf_token: str = Form("")):
    if decision not in ("confirm", "reject"):
        raise HTTPException(status_code=404)
    with Session(engine) as session:
        admin = get_staff_user(request, session, "admin")
        if not admin:
            return to_login("/admin")
        if validate_csrf(request, csrf_token):
            try:
                if decision == "confirm":
                    purchase_service.confirm_purchase(session, admin, purchase_id)
                else:
                    purchase_service.reject_purchase(session, admin, purchase_id)
            except ServiceError as exc:
                return back_to("/admin/dashboard", exc.message)
    return back_to("/admin/dashboard")


@app.post("/admin/customers/{user_id}/active")
def admin_customer_active(request: Request, user_id: int, csrf_token: str = Form(""), is_active: bool = Form(False)):
    with Session(engine) as session:
        admin = get_staff_user(request, session, "admin")
        if not admin:
            return to_login("/admin")
        if validate_csrf(request, csrf_token):
            try:
                support_service.set_customer_active(session, admin, user_id, is_active)
            except ServiceError as exc:
                return back_to("/admin/dashboard", exc.message)
    return back_to(f"/customer-service/customer/{user_id}")


@app.get("/customer-service", response_class=HTMLResponse)
def customer_service_login_page(request: Request):
    return staff_login_page(request, "customer_service")


@app.post("/customer-service", response_class=HTMLResponse)
def customer_service_login(
    request: Request,
    csrf_token: str = Form(""),
    email: str = Form(...),
    password: str = Form(...),
    mpin: str = Form(...),
):
    return staff_login(request, "customer_service", csrf_token, email, password, mpin)


@app.get("/customer-service/dashboard", response_class=HTMLResponse)
def customer_service_dashboard(request: Request, q: str = ""):
    with Session(engine) as session:
        agent = get_staff_user(request, session, "customer_service")
        if not agent:
            return to_login("/customer-service")
        return render_template(
            "cs_dashboard.html",
            {"request": request, "user": agent, "query": q, "customers": support_service.search_customers(session, agent, q)},
        )


@app.get("/customer-service/customer/{user_id}", response_class=HTMLResponse)
def customer_detail(request: Request, user_id: int):
    with Session(engine) as session:
        agent = get_staff_user(request, session, "customer_service")
        if not agent:
            return to_login("/customer-service")
        try:
            detail = support_service.get_customer_detail(session, agent, user_id)
        except ServiceError:
            return render_template("404.html", {"request": request, "user": agent}, status_code=404)
        return render_template(
            "cs_customer.html",
            {"request": request, "user": agent, "error": request.query_params.get("error"), **detail},
        )


# JSON API


class SignalIn(BaseModel):
    symbol: str
    timeframe: str
    direction: str
    entry_price: float
    stop_loss: float
    take_profit: str
    signal_type: str = "crypto"
    currency_pair: str | None = None
    pips_at_risk: str | None = None
    confidence: int | None = None
    analysis: str | None = None
    ict_concepts: list[str] = []
    expires_at: datetime | None = None


class StatusIn(BaseModel):
    status: str


@app.get("/api/me")
def api_me(user: User = Depends(api_user), session: Session = Depends(get_session)):
    info = auth_service.get_user_profile(session, user.id)
    has_access, _, message = signal_service.check_user_signal_access(session, user.id)
    return {
        "user": info["user"].model_dump(exclude={"password_hash", "stripe_customer_id"}),
        "profile": info["profile"].model_dump() if info["profile"] else None,
        "subscription": info["subscription"].model_dump() if info["subscription"] else None,
        "signal_access": {"has_access": has_access, "message": message},
    }


@app.get("/api/signals")
def api_signals(signal_type: str = "", user: User = Depends(api_user), session: Session = Depends(get_session)):
    if signal_type:
        signals = signal_service.get_signals_by_type(session, signal_type, user.id)
    else:
        signals = signal_service.get_active_signals(session, user.id)
    return {"signals": [s.model_dump() for s in signals]}


@app.post("/api/signals/{signal_id}/view", dependencies=[Depends(api_csrf)])
def api_track_view(signal_id: int, user: User = Depends(api_user), session: Session = Depends(get_session)):
    access = signal_service.track_signal_view(session, user.id, signal_id)
    return {"signal_id": access.signal_id, "viewed_at": access.viewed_at}


@app.get("/api/signals/history")
def api_signal_history(user: User = Depends(api_user), session: Session = Depends(get_session)):
    history = signal_service.get_user_signal_history(session, user.id)
    return {"history": [{"viewed_at": h["viewed_at"], "signal": h["signal"].model_dump()} for h in history]}


@app.get("/api/admin/notifications")
def api_notifications(include_read: bool = False, admin: User = Depends(api_admin), session: Session = Depends(get_session)):
    notifications = purchase_service.get_admin_notifications(session, admin, include_read=include_read)
    return {"notifications": notifications, "unread_count": sum(1 for n in notifications if not n["is_read"])}


@app.post("/api/admin/notifications/{notification_id}/read", dependencies=[Depends(api_csrf)])
def api_mark_read(notification_id: int, admin: User = Depends(api_admin), session: Session = Depends(get_session)):
    notification = purchase_service.mark_notification_as_read(session, admin, notification_id)
    return {"id": notification.id, "is_read": notification.is_read}


@app.post("/api/admin/signals", status_code=201, dependencies=[Depends(api_csrf)])
def api_create_signal(body: SignalIn, admin: User = Depends(api_admin), session: Session = Depends(get_session)):
    signal = signal_service.create_signal(session, admin, **body.model_dump())
    return signal.model_dump()


@app.post("/api/admin/signals/{signal_id}/status", dependencies=[Depends(api_csrf)])
def api_signal_status(signal_id: int, body: StatusIn, admin: User = Depends(api_admin), session: Session = Depends(get_session)):
    signal = signal_service.update_signal_status(session, admin, signal_id, body.status)
    return signal.model_dump()


@app.get("/api/purchases")
def api_purchases(user: User = Depends(api_user), session: Session = Depends(get_session)):
    purchases = purchase_service.get_user_purchases(session, user, user.id)
    return {"purchases": [p.model_dump() for p in purchases]}
