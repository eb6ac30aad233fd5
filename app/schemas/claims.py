from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.my_base_model import CustomBaseModel

# Request fields are optional so that missing values reach the handler
# and are reported as 400 with the list of required fields.


class NonceRequest(BaseModel):
    """Request model for nonce generation - input validation"""

    wallet_address: Optional[str] = Field(None, description="EVM wallet address (0x...)")


class NonceResponse(CustomBaseModel):
    """Response model for nonce generation - output"""

    nonce: str = ""


class AuthMessageResponse(CustomBaseModel):
    """Sign-in message with a freshly issued nonce embedded"""

    message: str = ""
    nonce: str = ""


class AuthVerifyRequest(BaseModel):
    """Request model for sign-in verification - input validation"""

    wallet_address: Optional[str] = Field(None, description="Wallet address")
    message: Optional[str] = Field(None, description="Exact message that was signed")
    signature: Optional[str] = Field(None, description="personal_sign signature (hex)")


class AuthVerifyResponse(CustomBaseModel):
    authenticated: bool = True
    registered: bool = False
    wallet_address: str = ""
    email: str = ""
    discord: str = ""


class RegisterRequest(BaseModel):
    """Request model for claim registration - input validation"""

    wallet_address: Optional[str] = Field(None, description="Wallet address")
    email: Optional[str] = Field(None, description="Email to register")
    discord: Optional[str] = Field(None, description="Discord handle (optional)")
    message: Optional[str] = Field(None, description="Exact message that was signed")
    signature: Optional[str] = Field(None, description="personal_sign signature (hex)")


class RegisterResponse(CustomBaseModel):
    """Response model for claim registration - output
    Example:
    {
        "success": true,
        "alreadyExisted": false,
        "email": "a@b.co",
        "discord": ""
    }
    """

    success: bool = True
    alreadyExisted: bool = False
    email: str = ""
    discord: str = ""


class ClaimResponse(CustomBaseModel):
    """Public registration status. Email and discord are only returned after a signed sign-in."""

    wallet_address: str
    registered: bool = False


class ErrorResponse(BaseModel):
    error: str
    code: Optional[str] = None
    field: Optional[str] = None
    retryAfter: Optional[int] = None


class HealthCheck(CustomBaseModel):
    status: str = "oke"
