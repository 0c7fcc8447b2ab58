from datetime import timedelta

from pydantic import BaseModel, Field, model_validator


class SchedulerModel(BaseModel, frozen=True):
    enabled: bool = True
    interval_sec: int = Field(default=300, gt=0)  # 5 mins
    window_end_min: int = Field(default=35, ge=0)
    window_start_min: int = Field(default=25, ge=0)

    @model_validator(mode="after")
    def _validate_window(self) -> "SchedulerModel":
        """
        Validate the notification window against the sweep interval.

        The window must be wider than the interval, otherwise a delayed sweep could let an event pass through the window unseen.
        """
        if self.window_start_min >= self.window_end_min:
            raise ValueError("window_start_min must be lower than window_end_min")
        if (self.window_end - self.window_start).total_seconds() <= self.interval_sec:
            raise ValueError("Notification window must be wider than interval_sec")
        return self

    @property
    def window_start(self) -> timedelta:
        return timedelta(minutes=self.window_start_min)

    @property
    def window_end(self) -> timedelta:
        return timedelta(minutes=self.window_end_min)
