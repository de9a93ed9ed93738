from pydantic import BaseModel, ConfigDict, EmailStr, field_validator


class LoginIn(BaseModel):
    email: EmailStr
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: EmailStr) -> str:
        return str(value).strip().lower()

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"email": "buyer@example.com", "password": "password123"}
        }
    )


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
