"""Linear rescaling of vendor or pre-processed flip-angle maps.

Inputs are [anatomical reference, flip-angle map]; the map is converted
to percent units with ``(|map| + offset) * scaling``.
"""

from __future__ import annotations

import logging

from b1mappy.core.logfmt import log_banner
from b1mappy.core.parameters import B1MapParameters
from b1mappy.core.protocol import B1Inputs, B1MapResult, B1Protocol, Collaborators
from b1mappy.models.flip_angle import linear_scaling, scaling_coefficients


class ScaledMapProtocol(B1Protocol):

    def compute(self, params: B1MapParameters, volumes: B1Inputs, collaborators: Collaborators) -> B1MapResult:
        log_banner(f'Rescaling {self.tag} B1 map')

        anatomical, fa_map = volumes.b1
        offset, scaling, description = scaling_coefficients(
            self.tag, alphanom=params.acquisition.alphanom, scafac=params.acquisition.scafac
        )
        logging.info(f"{self.tag}: offset = {offset:g}, scaling = {scaling:g}")

        raw = linear_scaling(fa_map.data, offset, scaling)
        return self.finish(params, raw, fa_map, anatomical, collaborators, description=description)


class TflB1MapProtocol(ScaledMapProtocol):
    tag = 'tfl_b1_map'
    description = 'SIEMENS tfl_b1map protocol'


class RfMapProtocol(ScaledMapProtocol):
    tag = 'rf_map'
    description = 'SIEMENS rf_map protocol'


class PreProcessedB1Protocol(ScaledMapProtocol):
    tag = 'pre_processed_B1'
    description = 'Pre-processed B1 map'
