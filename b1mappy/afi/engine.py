"""Actual flip-angle imaging (AFI) engine.

Yarnykh, MRM 57:192-200 (2007).
"""

from __future__ import annotations

import logging
import time

from b1mappy.core.logfmt import log_banner
from b1mappy.core.parameters import B1MapParameters
from b1mappy.core.protocol import B1Inputs, B1MapResult, B1Protocol, Collaborators
from b1mappy.core.validation import validate_same_geometry
from b1mappy.models.flip_angle import afi_b1


class AFIProtocol(B1Protocol):
    """Inputs: [short-TR image, long-TR image]. The short-TR image is the reference."""

    tag = 'i3D_AFI'
    description = 'AFI protocol'

    def compute(self, params: B1MapParameters, volumes: B1Inputs, collaborators: Collaborators) -> B1MapResult:
        start = time.time()
        log_banner('Computing B1 map from AFI data')

        tr1, tr2 = volumes.b1
        validate_same_geometry(tr1, tr2, context="AFI TR1/TR2 images")
        acq = params.acquisition
        logging.info(f"AFI: TR2/TR1 = {acq.tr2tr1_ratio:g}, nominal flip angle = {acq.alphanom:g} deg")

        estimate = afi_b1(tr1.data, tr2.data, acq.tr2tr1_ratio, acq.alphanom)
        if estimate.order_suspicious:
            logging.warning(
                "AFI: reversing the order of the input images gives fewer complex flip angles "
                f"({estimate.non_real_reversed:,} vs {estimate.non_real_forward:,}). "
                "The short-TR image must be the first input; please check the input order."
            )

        result = self.finish(params, estimate.percent, tr1, tr1, collaborators)
        logging.info(f"AFI B1 map complete in {time.time() - start:.4f} seconds")
        return result
