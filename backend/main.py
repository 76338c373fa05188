from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, Header
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from datetime import datetime
import asyncio
import logging
import os
import uvicorn

import models
import auth
import debts
import pos_settings
from database import SessionLocal, engine, get_db, init_pos_config, wait_for_db
from errors import AppError, InvalidInput, NotFound, handle_error
from notifications import ChangeBus
from orders import OrderService
from printing import PrintDispatcher
from redis_client import rate_limit, redis_client
from settlement import CheckoutService
from schemas import (
    AcceptedItem,
    BillResponse,
    BulkOrderCreate,
    CategoryCreate,
    CategoryResponse,
    CheckNumberResponse,
    CheckoutRequest,
    CheckoutResponse,
    CustomerCreate,
    CustomerResponse,
    DebtHistoryResponse,
    DebtorResponse,
    DebtPayment,
    DebtPaymentResponse,
    GuestsUpdate,
    HallCreate,
    HallResponse,
    KitchenCreate,
    KitchenResponse,
    OrderItemResponse,
    PinLogin,
    ProductCreate,
    ProductResponse,
    ProductStatusUpdate,
    SaleResponse,
    StaffCreate,
    StaffResponse,
    TableCreate,
    TableResponse,
    TableStatusUpdate,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("pos.api")


app = FastAPI(title="Restaurant POS API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

bus = ChangeBus(redis=redis_client)
dispatcher = PrintDispatcher(SessionLocal, bus)
order_service = OrderService(dispatcher=dispatcher, bus=bus)
checkout_service = CheckoutService(dispatcher=dispatcher, bus=bus)


def _refresh_caches(event: Dict[str, Any]):
    if event["type"] in ("tables", "halls"):
        redis_client.invalidate_tables_cache()
    elif event["type"] in ("products", "kitchens", "categories"):
        redis_client.invalidate_products_cache()


bus.subscribe(_refresh_caches)


@app.on_event("startup")
def startup_event():
    if wait_for_db():
        try:
            models.Base.metadata.create_all(bind=engine)
            init_pos_config()
            logger.info("Database initialised")
        except Exception:
            logger.exception("Database initialisation failed")
    else:
        logger.error("Database did not become available during startup")

    if redis_client.is_available():
        logger.info("Redis available")
    else:
        logger.warning("Redis unavailable, caching disabled")


@app.on_event("shutdown")
def shutdown_event():
    dispatcher.shutdown(wait=True)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=handle_error(exc, request.url.path))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    return JSONResponse(status_code=409, content=handle_error(exc, request.url.path))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=500, content=handle_error(exc, request.url.path))


async def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = authorization.replace("Bearer ", "")
    payload = auth.verify_token(token)

    if not payload:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id or not str(user_id).isdigit():
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.query(models.User).filter(models.User.id == int(user_id)).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return user


def require_admin(user: models.User, action: str):
    if user.role != models.UserRole.ADMIN:
        raise HTTPException(status_code=403, detail=f"Only administrators can {action}")


def _table_data(t: models.DiningTable) -> Dict[str, Any]:
    return {
        "id": t.id,
        "hall_id": t.hall_id,
        "name": t.name,
        "status": t.status,
        "current_check_number": t.current_check_number,
        "total_amount": t.total_amount,
        "waiter_id": t.waiter_id,
        "waiter_name": t.waiter_name,
        "guests": t.guests,
        "start_time": t.start_time,
    }


def _product_data(p: models.Product) -> Dict[str, Any]:
    return {
        "id": p.id,
        "category_id": p.category_id,
        "name": p.name,
        "price": p.price,
        "destination": p.destination,
        "is_active": p.is_active,
    }


# ========== Service ==========

@app.get("/")
def read_root():
    return {"message": "Restaurant POS API is working!"}


@app.get("/health")
def health_check():
    return {"status": "ok", "message": "API is running"}


@app.get("/cache/info")
def get_cache_info():
    return redis_client.get_cache_info()


@app.websocket("/ws")
async def updates_socket(websocket: WebSocket):
    await websocket.accept()
    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    loop = asyncio.get_running_loop()
    unsubscribe = bus.subscribe(lambda event: loop.call_soon_threadsafe(queue.put_nowait, event))
    logger.info("Client connected to updates")
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        logger.info("Client disconnected from updates")


# ========== Staff ==========

@app.post("/login")
@rate_limit(max_requests=10, window=60, key_prefix="login")
async def login(request: Request, credentials: PinLogin, db: Session = Depends(get_db)):
    # every stored hash is checked, keep it off the event loop
    user = await run_in_threadpool(auth.authenticate_user, db, credentials.pin)
    access_token = auth.create_access_token(data={"sub": str(user.id), "role": user.role.value})
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": {"id": user.id, "name": user.name, "role": user.role.value},
    }


@app.get("/me", response_model=StaffResponse)
def get_current_user_info(current_user: models.User = Depends(get_current_user)):
    return current_user


@app.get("/staff", response_model=List[StaffResponse])
def get_staff(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return db.query(models.User).order_by(models.User.id).all()


@app.post("/staff", response_model=StaffResponse)
def create_staff(staff: StaffCreate, db: Session = Depends(get_db),
                 current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "add staff")

    if auth.find_user_by_pin(db, staff.pin):
        raise AppError("CONSTRAINT", "This PIN is already in use")

    try:
        user = models.User(name=staff.name, pin=auth.get_pin_hash(staff.pin), role=staff.role)
        db.add(user)
        db.commit()
        db.refresh(user)
    except Exception:
        db.rollback()
        raise
    logger.info(f"Staff added: {user.name} ({user.role.value})")
    bus.notify("users")
    return user


@app.delete("/staff/{user_id}")
def delete_staff(user_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "delete staff")

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise NotFound("Staff member not found")

    if user.role == models.UserRole.ADMIN:
        admin_count = db.query(models.User).filter(models.User.role == models.UserRole.ADMIN).count()
        if admin_count <= 1:
            raise AppError("LAST_ADMIN")

    try:
        db.delete(user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.warning(f"Staff deleted: {user_id}")
    bus.notify("users")
    return {"message": "Staff member deleted"}


# ========== Halls & tables ==========

@app.get("/halls", response_model=List[HallResponse])
def get_halls(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return db.query(models.Hall).order_by(models.Hall.id).all()


@app.post("/halls", response_model=HallResponse)
def create_hall(hall: HallCreate, db: Session = Depends(get_db),
                current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "add halls")
    try:
        db_hall = models.Hall(name=hall.name)
        db.add(db_hall)
        db.commit()
        db.refresh(db_hall)
    except Exception:
        db.rollback()
        raise
    bus.notify("halls")
    return db_hall


@app.get("/tables", response_model=List[TableResponse])
def get_tables(hall_id: Optional[int] = None, db: Session = Depends(get_db),
               current_user: models.User = Depends(get_current_user)):
    cached_tables = redis_client.get_cached_tables()
    if cached_tables is None:
        tables = db.query(models.DiningTable).order_by(models.DiningTable.id).all()
        cached_tables = [_table_data(t) for t in tables]
        redis_client.cache_tables(cached_tables)

    result = [TableResponse(**t) for t in cached_tables]
    if hall_id is not None:
        result = [t for t in result if t.hall_id == hall_id]
    return result


@app.post("/tables", response_model=TableResponse)
def create_table(table: TableCreate, db: Session = Depends(get_db),
                 current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "add tables")
    if not db.query(models.Hall).filter(models.Hall.id == table.hall_id).first():
        raise NotFound("Hall not found")
    try:
        db_table = models.DiningTable(hall_id=table.hall_id, name=table.name)
        db.add(db_table)
        db.commit()
        db.refresh(db_table)
    except Exception:
        db.rollback()
        raise
    bus.notify("tables")
    return TableResponse(**_table_data(db_table))


@app.get("/tables/{table_id}/items", response_model=List[OrderItemResponse])
def get_table_items(table_id: int, db: Session = Depends(get_db),
                    current_user: models.User = Depends(get_current_user)):
    return order_service.get_table_items(db, table_id)


@app.post("/tables/{table_id}/check-number", response_model=CheckNumberResponse)
def allocate_check_number(table_id: int, db: Session = Depends(get_db),
                          current_user: models.User = Depends(get_current_user)):
    return {"table_id": table_id, "check_number": order_service.allocate_check_number(db, table_id)}


@app.post("/tables/{table_id}/guests", response_model=TableResponse)
def set_guests(table_id: int, guests: GuestsUpdate, db: Session = Depends(get_db),
               current_user: models.User = Depends(get_current_user)):
    table = order_service.set_guests(db, table_id, guests.count)
    return TableResponse(**_table_data(table))


@app.put("/tables/{table_id}/status", response_model=TableResponse)
def update_table_status(table_id: int, update: TableStatusUpdate, db: Session = Depends(get_db),
                        current_user: models.User = Depends(get_current_user)):
    table = order_service.update_status(db, table_id, update.status)
    return TableResponse(**_table_data(table))


@app.get("/tables/{table_id}/bill", response_model=BillResponse)
def get_bill(table_id: int, db: Session = Depends(get_db),
             current_user: models.User = Depends(get_current_user)):
    return order_service.get_bill(db, table_id)


@app.post("/tables/{table_id}/bill", response_model=BillResponse)
def request_bill(table_id: int, db: Session = Depends(get_db),
                 current_user: models.User = Depends(get_current_user)):
    return order_service.request_bill(db, table_id)


@app.post("/tables/{table_id}/close", response_model=TableResponse)
def close_table(table_id: int, db: Session = Depends(get_db),
                current_user: models.User = Depends(get_current_user)):
    table = order_service.close_table(db, table_id)
    return TableResponse(**_table_data(table))


# ========== Orders & checkout ==========

@app.post("/orders/bulk-add", response_model=List[AcceptedItem])
def add_bulk_items(order: BulkOrderCreate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    waiter_id = order.waiter_id
    if waiter_id is None and current_user.role == models.UserRole.WAITER:
        waiter_id = current_user.id
    return order_service.add_items(db, order.table_id, order.items, waiter_id)


@app.post("/checkout", response_model=CheckoutResponse)
def checkout(request: CheckoutRequest, db: Session = Depends(get_db),
             current_user: models.User = Depends(get_current_user)):
    if current_user.role == models.UserRole.WAITER:
        raise HTTPException(status_code=403, detail="Only cashiers and administrators can check out")
    return checkout_service.checkout(db, request)


@app.get("/sales", response_model=List[SaleResponse])
def get_sales(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
              db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    query = db.query(models.Sale)
    if not start_date or not end_date:
        return query.order_by(models.Sale.date.desc(), models.Sale.id.desc()).limit(100).all()

    if start_date > end_date:
        raise InvalidInput("start_date must not be after end_date")
    sales = (
        query.filter(models.Sale.date >= start_date, models.Sale.date <= end_date)
        .order_by(models.Sale.date.desc(), models.Sale.id.desc())
        .all()
    )
    logger.info(f"Sales from {start_date} to {end_date}: {len(sales)}")
    return sales


# ========== Catalog ==========

@app.get("/categories", response_model=List[CategoryResponse])
def get_categories(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return db.query(models.Category).order_by(models.Category.id).all()


@app.post("/categories", response_model=CategoryResponse)
def create_category(category: CategoryCreate, db: Session = Depends(get_db),
                    current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "add categories")
    try:
        db_category = models.Category(name=category.name)
        db.add(db_category)
        db.commit()
        db.refresh(db_category)
    except Exception:
        db.rollback()
        raise
    bus.notify("categories")
    return db_category


@app.get("/products", response_model=List[ProductResponse])
def get_products(active_only: bool = False, db: Session = Depends(get_db),
                 current_user: models.User = Depends(get_current_user)):
    cached_products = redis_client.get_cached_products()
    if cached_products is None:
        products = db.query(models.Product).order_by(models.Product.id).all()
        cached_products = [_product_data(p) for p in products]
        redis_client.cache_products(cached_products)

    result = [ProductResponse(**p) for p in cached_products]
    if active_only:
        result = [p for p in result if p.is_active]
    return result


@app.post("/products", response_model=ProductResponse)
def create_product(product: ProductCreate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "add products")
    if not db.query(models.Category).filter(models.Category.id == product.category_id).first():
        raise NotFound("Category not found")
    try:
        db_product = models.Product(**product.model_dump(), is_active=True)
        db.add(db_product)
        db.commit()
        db.refresh(db_product)
    except Exception:
        db.rollback()
        raise
    bus.notify("products")
    return ProductResponse(**_product_data(db_product))


@app.put("/products/{product_id}/status", response_model=ProductResponse)
def toggle_product_status(product_id: int, update: ProductStatusUpdate, db: Session = Depends(get_db),
                          current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "change products")
    db_product = db.query(models.Product).filter(models.Product.id == product_id).first()
    if not db_product:
        raise NotFound("Product not found")
    try:
        db_product.is_active = update.is_active
        db.commit()
        db.refresh(db_product)
    except Exception:
        db.rollback()
        raise
    bus.notify("products")
    return ProductResponse(**_product_data(db_product))


@app.get("/kitchens", response_model=List[KitchenResponse])
def get_kitchens(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return db.query(models.Kitchen).order_by(models.Kitchen.id).all()


@app.post("/kitchens", response_model=KitchenResponse)
def create_kitchen(kitchen: KitchenCreate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "add stations")
    try:
        db_kitchen = models.Kitchen(**kitchen.model_dump())
        db.add(db_kitchen)
        db.commit()
        db.refresh(db_kitchen)
    except Exception:
        db.rollback()
        raise
    logger.info(f"Station added: {db_kitchen.name}")
    bus.notify("kitchens")
    return db_kitchen


@app.delete("/kitchens/{kitchen_id}")
def delete_kitchen(kitchen_id: int, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "delete stations")
    db_kitchen = db.query(models.Kitchen).filter(models.Kitchen.id == kitchen_id).first()
    if not db_kitchen:
        raise NotFound("Station not found")
    try:
        # products of a removed station fall back to the default station when ordered
        db.query(models.Product).filter(models.Product.destination == str(kitchen_id)).update(
            {models.Product.destination: None}, synchronize_session=False
        )
        db.delete(db_kitchen)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Station deleted: {kitchen_id}")
    bus.notify("kitchens")
    bus.notify("products")
    return {"message": "Station deleted"}


# ========== Customers & debts ==========

@app.get("/customers", response_model=List[CustomerResponse])
def get_customers(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return db.query(models.Customer).order_by(models.Customer.id).all()


@app.post("/customers", response_model=CustomerResponse)
def create_customer(customer: CustomerCreate, db: Session = Depends(get_db),
                    current_user: models.User = Depends(get_current_user)):
    try:
        db_customer = models.Customer(**customer.model_dump())
        db.add(db_customer)
        db.commit()
        db.refresh(db_customer)
    except Exception:
        db.rollback()
        raise
    bus.notify("customers")
    return db_customer


@app.get("/debtors", response_model=List[DebtorResponse])
def get_debtors(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return debts.get_debtors(db)


@app.get("/customers/{customer_id}/debt-history", response_model=List[DebtHistoryResponse])
def get_debt_history(customer_id: int, db: Session = Depends(get_db),
                     current_user: models.User = Depends(get_current_user)):
    return debts.get_debt_history(db, customer_id)


@app.post("/customers/{customer_id}/pay-debt", response_model=DebtPaymentResponse)
def pay_debt(customer_id: int, payment: DebtPayment, db: Session = Depends(get_db),
             current_user: models.User = Depends(get_current_user)):
    if current_user.role == models.UserRole.WAITER:
        raise HTTPException(status_code=403, detail="Only cashiers and administrators can accept payments")
    debt = debts.pay_debt(db, customer_id, payment.amount, payment.comment, bus=bus)
    return {"customer_id": customer_id, "debt": debt}


# ========== Settings ==========

@app.get("/settings")
def get_settings(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return pos_settings.get_settings(db)


@app.put("/settings")
def save_settings(values: Dict[str, Any], db: Session = Depends(get_db),
                  current_user: models.User = Depends(get_current_user)):
    require_admin(current_user, "change settings")
    result = pos_settings.save_settings(db, values)
    bus.notify("settings")
    return result


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
