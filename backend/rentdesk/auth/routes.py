from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field

from rentdesk.auth.dependencies import get_current_user
from rentdesk.common.enums import Role, UserStatus
from rentdesk.common.utils import as_dict
from rentdesk.core.security import create_access_token, hash_password, verify_password
from rentdesk.db.prisma_client import db, prisma_session

router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    name: str | None = None
    phone: str | None = None


def _public_user(user) -> dict:
    data = as_dict(user)
    data.pop("hashedPassword", None)
    return data


@router.post("/register", status_code=201)
async def register_user(payload: RegisterRequest):
    async with prisma_session(db) as client:
        existing = await client.user.find_unique(where={"email": payload.email})
        if existing:
            raise HTTPException(status_code=400, detail="Email already registered")

        user = await client.user.create(
            data={
                "email": payload.email,
                "name": payload.name,
                "phone": payload.phone,
                "hashedPassword": hash_password(payload.password),
                "role": Role.CUSTOMER.value,
                "status": UserStatus.ACTIVE.value,
            }
        )
    return _public_user(user)


@router.post("/login")
async def login_user(form_data: OAuth2PasswordRequestForm = Depends()):
    async with prisma_session(db) as client:
        user = await client.user.find_unique(where={"email": form_data.username})

    record = as_dict(user)
    if not user or not verify_password(form_data.password, record.get("hashedPassword") or ""):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if record.get("status") != UserStatus.ACTIVE.value:
        raise HTTPException(status_code=403, detail="Account is disabled")

    token = create_access_token({"sub": record["email"], "role": record["role"]})
    return {"access_token": token, "token_type": "bearer"}


@router.get("/me")
async def read_current_user(user=Depends(get_current_user)):
    return _public_user(user)
