"""Double-angle method (DAM) engine."""

from __future__ import annotations

import logging
import time

from b1mappy.core.logfmt import log_banner
from b1mappy.core.parameters import B1MapParameters
from b1mappy.core.protocol import B1Inputs, B1MapResult, B1Protocol, Collaborators
from b1mappy.core.validation import validate_same_geometry
from b1mappy.models.flip_angle import dam_b1


class DAMProtocol(B1Protocol):
    """Inputs: [2*alpha image, alpha image]. The alpha image is the reference."""

    tag = 'DAM'
    description = 'DAM protocol'

    def compute(self, params: B1MapParameters, volumes: B1Inputs, collaborators: Collaborators) -> B1MapResult:
        start = time.time()
        log_banner('Computing B1 map from DAM data')

        two_alpha, alpha = volumes.b1
        validate_same_geometry(alpha, two_alpha, context="DAM alpha/2-alpha images")
        logging.info(f"DAM: nominal flip angle = {params.acquisition.alphanom:g} deg")

        raw = dam_b1(alpha.data, two_alpha.data, params.acquisition.alphanom)
        result = self.finish(params, raw, alpha, alpha, collaborators)
        logging.info(f"DAM B1 map complete in {time.time() - start:.4f} seconds")
        return result
