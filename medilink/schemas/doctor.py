from pydantic import BaseModel, ConfigDict


class DoctorProfile(BaseModel):
    """Read-only view of a directory entry."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    name: str
    specialization: str
    approved: bool
    is_online: bool
    rating: float = 0.0
    total_reviews: int = 0
