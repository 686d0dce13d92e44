"""
Course and per-course edit rule schemas.
"""

from pydantic import BaseModel, Field

from booking_lifecycle.schemas.policy import CancellationPolicy


class Course(BaseModel):
    id: str
    name: str
    min_players: int = Field(default=1, ge=1)
    max_players: int = Field(default=4, ge=1)
    min_lead_time_hours: int = Field(default=3, ge=0)
    add_on_catalog: dict[str, int] = Field(default_factory=dict)  # add-on id -> unit price cents
    add_on_names: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


class CourseEditRules(BaseModel):
    edit_lock_hours: int = 6
    cancellation_lock_hours: int = 0
    free_reschedules: int = 1
    reschedule_fee_cents: int = 14900
    transfer_fee_cents: int = 9900
    max_reschedules_per_booking: int = 3
    min_players_reduction_hours: int = 24
    player_reduction_refund_percent_early: int = Field(default=100, ge=0, le=100)
    player_reduction_refund_percent_late: int = Field(default=50, ge=0, le=100)
    max_edits_per_hour: int = 5
    rate_limit_window_seconds: int = 3600

    model_config = {"frozen": True}

    def player_reduction_tiers(self) -> list[CancellationPolicy]:
        """Removed seats are refunded along the same tier logic as cancellations."""
        return [
            CancellationPolicy(
                hours_before_min=self.min_players_reduction_hours,
                refund_percent=self.player_reduction_refund_percent_early,
                description=(
                    f"{self.player_reduction_refund_percent_early}% refund for removed players "
                    f"{self.min_players_reduction_hours}+ hours in advance"
                ),
            ),
            CancellationPolicy(
                hours_before_min=0,
                hours_before_max=self.min_players_reduction_hours,
                refund_percent=self.player_reduction_refund_percent_late,
                description=(
                    f"{self.player_reduction_refund_percent_late}% refund for removed players "
                    f"within {self.min_players_reduction_hours} hours"
                ),
            ),
        ]
