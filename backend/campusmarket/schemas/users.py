from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .listings import check_image_uri


class UserProfileSync(BaseModel):
    """Profile fields a user may set on themselves. Role is admin-controlled and rejected here."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    firstName: Optional[str] = Field(default=None, max_length=100)
    lastName: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    university: Optional[str] = Field(default=None, min_length=1, max_length=200)
    profilePicture: Optional[str] = None

    @field_validator("profilePicture")
    @classmethod
    def _picture(cls, v: Optional[str]) -> Optional[str]:
        return check_image_uri(v) if v else v
