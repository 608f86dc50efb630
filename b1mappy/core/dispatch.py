"""Protocol registry and dispatch.

The registry is closed: it holds exactly one class per computing protocol
tag and is checked against `ProtocolTag` when this module is imported.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Type

from b1mappy.afi.engine import AFIProtocol
from b1mappy.core.parameters import NON_COMPUTING_TAGS, PROTOCOL_TAGS, B1MapParameters
from b1mappy.core.protocol import B1Inputs, B1MapResult, B1Protocol, Collaborators
from b1mappy.core.validation import UnsupportedProtocol
from b1mappy.dam.engine import DAMProtocol
from b1mappy.scaled.engine import PreProcessedB1Protocol, RfMapProtocol, TflB1MapProtocol
from b1mappy.seste.engine import SESTEProtocol


PROTOCOL_REGISTRY: Dict[str, Type[B1Protocol]] = {
    cls.tag: cls
    for cls in (AFIProtocol, SESTEProtocol, DAMProtocol, TflB1MapProtocol, RfMapProtocol, PreProcessedB1Protocol)
}

COMPUTING_TAGS = tuple(t for t in PROTOCOL_TAGS if t not in NON_COMPUTING_TAGS)

if set(PROTOCOL_REGISTRY) != set(COMPUTING_TAGS):
    raise RuntimeError(
        f"Protocol registry {sorted(PROTOCOL_REGISTRY)} does not match the computing tags {sorted(COMPUTING_TAGS)}."
    )


def get_protocol(tag: str) -> B1Protocol:
    try:
        return PROTOCOL_REGISTRY[tag]()
    except KeyError:
        raise UnsupportedProtocol(f"Unknown B1 processing method '{tag}'.") from None


def read_inputs(params: B1MapParameters, collaborators: Collaborators) -> B1Inputs:
    read = collaborators.io.read
    return B1Inputs(
        b1=tuple(read(f) for f in params.b1_files) if not params.se_files else (),
        b0=tuple(read(f) for f in params.b0_files),
        se=tuple(read(f) for f in params.se_files),
        ste=tuple(read(f) for f in params.ste_files),
    )


def dispatch(
    params: B1MapParameters,
    collaborators: Optional[Collaborators] = None,
    volumes: Optional[B1Inputs] = None,
) -> Optional[B1MapResult]:
    """Run the protocol selected by ``params``.

    Returns None when no B1 map is computed (``no_B1_correction``,
    ``UNICORT`` or an unsupported tag).
    """
    collaborators = collaborators or Collaborators()
    if not params.b1_available:
        logging.info(f"B1 protocol '{params.protocol}': no B1 map computed.")
        return None
    try:
        protocol = get_protocol(params.protocol)
    except UnsupportedProtocol as exc:
        logging.warning(f"{exc} No B1 map calculation performed.")
        return None

    if volumes is None:
        volumes = read_inputs(params, collaborators)
    return protocol.compute(params, volumes, collaborators)
