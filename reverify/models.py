from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    # browsers send WebAuthn JSON in camelCase; accept snake_case too
    model_config = ConfigDict(populate_by_name=True)


class AttestationResponse(_WireModel):
    client_data_json: str = Field(alias="clientDataJSON")
    attestation_object: str = Field(alias="attestationObject")
    transports: List[str] = Field(default_factory=list)


class RegistrationCredential(_WireModel):
    id: str
    raw_id: str = Field(alias="rawId")
    type: str = "public-key"
    response: AttestationResponse


class AssertionResponse(_WireModel):
    client_data_json: str = Field(alias="clientDataJSON")
    authenticator_data: str = Field(alias="authenticatorData")
    signature: str
    user_handle: Optional[str] = Field(default=None, alias="userHandle")


class AuthenticationCredential(_WireModel):
    id: str
    raw_id: str = Field(alias="rawId")
    type: str = "public-key"
    response: AssertionResponse


class RegisterVerifyRequest(BaseModel):
    modality: Optional[str] = None
    credential: RegistrationCredential


class AuthenticateVerifyRequest(BaseModel):
    modality: Optional[str] = None
    credential: AuthenticationCredential


class FaceVerifyRequest(BaseModel):
    # base64 image; a "data:image/jpeg;base64," prefix is tolerated
    image: str


class ReviewDecisionRequest(BaseModel):
    decision: str
    notes: Optional[str] = Field(default=None, max_length=2000)
