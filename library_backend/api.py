import logging
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .auth import Principal
from .config import Settings, configure_logging
from .errors import Internal, InvalidInput, LibraryError
from .library import Library
from .schemas import (
    ActiveUserModel,
    BookCreateModel,
    BookModel,
    BorrowRecordCreateModel,
    BorrowRecordModel,
    BulkBooksModel,
    BulkResultModel,
    HealthModel,
    LoginModel,
    MessageModel,
    MostBorrowedModel,
    OverdueModel,
    ProfileUpdateModel,
    RegisteredModel,
    RegisterModel,
    StatsModel,
    TokenModel,
    UserCreateModel,
    UserModel,
    UserUpdateModel,
    describe_errors,
)

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# --- Dependencies ---

def get_library(request: Request) -> Library:
    return request.app.state.library


def guard(operation: str) -> Callable[..., Optional[Principal]]:
    """Dependency that verifies the bearer token (when needed) and asks the policy."""

    def dependency(
        library: Library = Depends(get_library),
        credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    ) -> Optional[Principal]:
        principal = None
        if library.policy.requires_token(operation):
            principal = library.identity.verify(credentials.credentials if credentials else None)
        library.policy.authorize(operation, principal)
        return principal

    return dependency


# --- Error handlers ---

def _error_response(error: LibraryError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if error.status_code == 401 else None
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()}, headers=headers)


async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error_response(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(InvalidInput(describe_errors(exc.errors()) or "Invalid request"))


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(Internal())


# --- Application factory ---

def create_app(settings: Optional[Settings] = None, library: Optional[Library] = None) -> FastAPI:
    settings = settings or (library.settings if library is not None else Settings())
    library = library or Library(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        library.initialize()
        logger.info("%s %s started (%s)", settings.app_name, settings.app_version, settings.environment)
        try:
            yield
        finally:
            library.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.library = library

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # --- Health ---
    @app.get("/health", response_model=HealthModel, dependencies=[Depends(guard("health"))])
    def health(library: Library = Depends(get_library)):
        return {
            "status": "healthy",
            "database": library.store.ping(),
            "version": library.settings.app_version,
        }

    # --- Auth ---
    @app.post("/register", response_model=RegisteredModel, dependencies=[Depends(guard("register"))])
    def register(payload: RegisterModel, library: Library = Depends(get_library)):
        user = library.identity.register(
            payload.full_name,
            payload.email,
            payload.password,
            payload.role.value if payload.role else None,
        )
        return {"message": "User registered successfully", "id": user.id}

    @app.post("/login", response_model=TokenModel, dependencies=[Depends(guard("login"))])
    def login(payload: LoginModel, library: Library = Depends(get_library)):
        token = library.identity.authenticate(payload.email, payload.password)
        return {"token": token, "token_type": "bearer", "expires_in": library.identity.token_lifetime_seconds}

    @app.post("/logout", response_model=MessageModel)
    def logout(principal: Principal = Depends(guard("logout")), library: Library = Depends(get_library)):
        library.identity.logout(principal)
        return {"message": "Logged out successfully"}

    # --- Users ---
    @app.get("/users", response_model=List[UserModel], dependencies=[Depends(guard("users.list"))])
    def list_users(library: Library = Depends(get_library)):
        return [user.to_dict() for user in library.catalog.list_users()]

    @app.post("/users", response_model=UserModel, dependencies=[Depends(guard("users.create"))])
    def create_user(payload: UserCreateModel, library: Library = Depends(get_library)):
        user = library.catalog.create_user(
            payload.full_name,
            payload.email,
            role=payload.role.value if payload.role else None,
            password=payload.password,
        )
        return user.to_dict()

    @app.get("/users/me", response_model=UserModel)
    def get_me(principal: Principal = Depends(guard("users.me")), library: Library = Depends(get_library)):
        return library.catalog.get_user(principal.user_id).to_dict()

    @app.put("/users/me", response_model=UserModel)
    def update_me(
        payload: ProfileUpdateModel,
        principal: Principal = Depends(guard("users.update_me")),
        library: Library = Depends(get_library),
    ):
        user = library.catalog.update_profile(
            principal.user_id,
            full_name=payload.full_name,
            email=payload.email,
            password=payload.password,
        )
        return user.to_dict()

    @app.get("/users/{user_id}", response_model=UserModel, dependencies=[Depends(guard("users.get"))])
    def get_user(user_id: int, library: Library = Depends(get_library)):
        return library.catalog.get_user(user_id).to_dict()

    @app.put("/users/{user_id}", response_model=UserModel, dependencies=[Depends(guard("users.update"))])
    def update_user(user_id: int, payload: UserUpdateModel, library: Library = Depends(get_library)):
        user = library.catalog.update_user(
            user_id,
            payload.full_name,
            payload.email,
            role=payload.role.value if payload.role else None,
        )
        return user.to_dict()

    @app.delete("/users/{user_id}", response_model=MessageModel, dependencies=[Depends(guard("users.delete"))])
    def delete_user(user_id: int, library: Library = Depends(get_library)):
        library.catalog.delete_user(user_id)
        return {"message": "User deleted"}

    # --- Books ---
    @app.get("/books", response_model=List[BookModel], dependencies=[Depends(guard("books.list"))])
    def list_books(library: Library = Depends(get_library)):
        return [book.to_dict() for book in library.catalog.list_books()]

    @app.post("/books", response_model=BookModel, dependencies=[Depends(guard("books.create"))])
    def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
        return library.catalog.create_book(**payload.model_dump()).to_dict()

    @app.get("/books/{book_id}", response_model=BookModel, dependencies=[Depends(guard("books.get"))])
    def get_book(book_id: int, library: Library = Depends(get_library)):
        return library.catalog.get_book(book_id).to_dict()

    @app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(guard("books.update"))])
    def update_book(book_id: int, payload: BookCreateModel, library: Library = Depends(get_library)):
        return library.catalog.update_book(book_id, **payload.model_dump()).to_dict()

    @app.delete("/books/{book_id}", response_model=MessageModel, dependencies=[Depends(guard("books.delete"))])
    def delete_book(book_id: int, library: Library = Depends(get_library)):
        library.catalog.delete_book(book_id)
        return {"message": "Book deleted"}

    @app.post("/bulk-books", response_model=BulkResultModel, dependencies=[Depends(guard("books.bulk_create"))])
    def bulk_create_books(payload: BulkBooksModel, library: Library = Depends(get_library)):
        results = library.catalog.bulk_create_books(payload.books)
        created = sum(1 for r in results if r.ok)
        return {
            "created": created,
            "failed": len(results) - created,
            "results": [r.to_dict() for r in results],
        }

    # --- Borrow records ---
    @app.get("/borrow_records", response_model=List[BorrowRecordModel], dependencies=[Depends(guard("records.list"))])
    def list_records(library: Library = Depends(get_library)):
        return [record.to_dict() for record in library.borrowing.list_records()]

    @app.post("/borrow_records", response_model=BorrowRecordModel, dependencies=[Depends(guard("records.create"))])
    def create_record(payload: BorrowRecordCreateModel, library: Library = Depends(get_library)):
        record = library.borrowing.create_record(
            payload.user_id,
            payload.book_id,
            payload.due_date,
            borrow_date=payload.borrow_date,
        )
        return record.to_dict()

    @app.get(
        "/borrow_records/{record_id}",
        response_model=BorrowRecordModel,
        dependencies=[Depends(guard("records.get"))],
    )
    def get_record(record_id: int, library: Library = Depends(get_library)):
        return library.borrowing.get_record(record_id).to_dict()

    @app.put(
        "/borrow_records/{record_id}/return",
        response_model=BorrowRecordModel,
        dependencies=[Depends(guard("records.return"))],
    )
    def return_record(record_id: int, library: Library = Depends(get_library)):
        return library.borrowing.mark_returned(record_id).to_dict()

    @app.delete(
        "/borrow_records/{record_id}",
        response_model=MessageModel,
        dependencies=[Depends(guard("records.delete"))],
    )
    def delete_record(record_id: int, library: Library = Depends(get_library)):
        library.borrowing.delete_record(record_id)
        return {"message": "Borrow record deleted"}

    # --- Reports ---
    @app.get(
        "/reports/most-borrowed",
        response_model=List[MostBorrowedModel],
        dependencies=[Depends(guard("reports.most_borrowed"))],
    )
    def most_borrowed(
        limit: Optional[int] = Query(None, ge=1, le=100),
        library: Library = Depends(get_library),
    ):
        rows = library.reports.most_borrowed(limit or library.settings.report_limit)
        return [{"book_id": r.id, "title": r.name, "borrow_count": r.borrow_count} for r in rows]

    @app.get(
        "/reports/active-users",
        response_model=List[ActiveUserModel],
        dependencies=[Depends(guard("reports.active_users"))],
    )
    def active_users(
        limit: Optional[int] = Query(None, ge=1, le=100),
        library: Library = Depends(get_library),
    ):
        rows = library.reports.most_active_borrowers(limit or library.settings.report_limit)
        return [{"user_id": r.id, "user_name": r.name, "borrow_count": r.borrow_count} for r in rows]

    @app.get("/reports/overdue", response_model=List[OverdueModel], dependencies=[Depends(guard("reports.overdue"))])
    def overdue(library: Library = Depends(get_library)):
        return [entry.to_dict() for entry in library.reports.overdue()]

    # --- Stats history ---
    @app.get("/stats", response_model=StatsModel, dependencies=[Depends(guard("stats.current"))])
    def current_stats(library: Library = Depends(get_library)):
        return library.stats.current().to_dict()

    @app.post("/stats/recompute", response_model=StatsModel, dependencies=[Depends(guard("stats.recompute"))])
    def recompute_stats(library: Library = Depends(get_library)):
        return library.stats.recompute().to_dict()

    @app.get("/stats/previous-day", response_model=StatsModel, dependencies=[Depends(guard("stats.previous_day"))])
    def previous_day_stats(library: Library = Depends(get_library)):
        return library.stats.previous_day().to_dict()


app = create_app()
