from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from nanopi_imager.app.prompts import confirm
from nanopi_imager.config.settings import RunConfig
from nanopi_imager.domain.models import RootfsBuildState


@dataclass(frozen=True)
class BuildContext:
    config: RunConfig
    confirm: Callable[[str, bool], bool] = field(default=confirm)

    @property
    def mountpoint(self):
        return self.config.mountpoint

    @property
    def cache_dir(self):
        return self.config.cache_dir

    @property
    def rootfs_state(self) -> RootfsBuildState:
        return RootfsBuildState(cache_dir=self.config.cache_dir)
