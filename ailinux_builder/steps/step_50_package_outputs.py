from __future__ import annotations

import logging
from pathlib import Path

from ..context import BuildContext
from ..errors import ValidationFailedError
from ..lib.image import CHECKSUM_FILES, verify_checksums, write_checksums

logger = logging.getLogger(__name__)


class PackageOutputsStep:
    step_id = "50_package_outputs"

    def run(self, ctx: BuildContext) -> None:
        iso = Path(ctx.cfg.iso_path)
        if ctx.dry_run:
            logger.info("Would write %s for %s", ", ".join(CHECKSUM_FILES.values()), iso)
            return
        if not iso.is_file():
            raise ValidationFailedError(f"Missing ISO output: {iso}")

        written = ctx.run_op("write_checksums", lambda: write_checksums(str(ctx.output_dir), [iso])) or []
        for sums in written:
            algo = next(a for a, name in CHECKSUM_FILES.items() if name == sums.name)
            ctx.run_op(f"verify_{sums.name.lower()}", lambda s=sums, a=algo: verify_checksums(str(s), a))
            ctx.report.outputs.append(str(sums))
