"""Acquisition parameter resolution.

`resolve_b1map_params` merges protocol defaults with per-volume metadata
and validates that the inputs fit the selected protocol. For each field
the metadata value wins when present (non-empty, non-zero); otherwise the
configured default is used and a warning `Diagnostic` is recorded.

Missing metadata never fails a run. Structural contradictions (odd SE/STE
volume count, identical AFI repetition times, differing SE/STE flip-angle
sets...) raise the matching `B1MapError` subclass.

The resolver does not log: diagnostics are returned on the parameter
record and reported by the caller.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, replace
from typing import Any, List, Literal, Optional, Protocol, Sequence, Tuple, get_args

from b1mappy.core.validation import FlipAngleMismatch, InvalidAcquisition, InvalidInputCount


ProtocolTag = Literal[
    'i3D_AFI',
    'i3D_EPI',
    'DAM',
    'tfl_b1_map',
    'rf_map',
    'pre_processed_B1',
    'no_B1_correction',
    'UNICORT',
]
PROTOCOL_TAGS: Tuple[str, ...] = get_args(ProtocolTag)

NO_CORRECTION = 'no_B1_correction'
NON_COMPUTING_TAGS = ('no_B1_correction', 'UNICORT')

# Reference T1 (ms) assumed by the SE/STE model at each supported field strength (T).
EXPECTED_T1_MS = {3: 1192.0, 7: 1633.0}


class MetadataLookup(Protocol):
    def get(self, path: str, key: str) -> Any: ...


@dataclass(frozen=True)
class Diagnostic:
    level: str  # 'info' | 'warning'
    code: str
    message: str


@dataclass(frozen=True)
class AcquisitionParameters:
    """Physical acquisition constants consumed by the signal models.

    Times are in ms, angles in degrees.
    """

    alphanom: Optional[float] = None
    tr2tr1_ratio: Optional[float] = None
    tm: Optional[float] = None
    tert: Optional[float] = None
    blip_dir: Optional[float] = None
    beta: Tuple[float, ...] = ()
    echo_times: Tuple[float, ...] = ()
    field_strength: Optional[float] = None
    short_te: Optional[float] = None
    long_te: Optional[float] = None
    scafac: Optional[float] = None


@dataclass(frozen=True)
class ProcessingParameters:
    b1_fwhm: Tuple[float, ...] = (8.0,)
    domask: bool = True
    eps: float = 1e-4
    n_trusted: int = 5
    n_ambiguous: int = 2
    t1: float = 1192.0
    # SE/STE post-unwarp processing
    hz_thresh: float = 110.0
    sd_thresh: float = 5.0
    erode_iterations: int = 1
    pad_iterations: int = 3
    fmap_fwhm: float = 10.0
    b0_mask_brain: bool = True
    pe_axis: int = 1


@dataclass(frozen=True)
class MaskOptions:
    median_radius: int = 4
    numpass: int = 4
    dilate: int = 3


@dataclass(frozen=True)
class ValidationOptions:
    check_tes: bool = True
    use_bids_flip_angle_field: bool = False


@dataclass(frozen=True)
class ProtocolDefaults:
    acquisition: AcquisitionParameters = field(default_factory=AcquisitionParameters)
    processing: ProcessingParameters = field(default_factory=ProcessingParameters)
    mask: MaskOptions = field(default_factory=MaskOptions)
    validation: ValidationOptions = field(default_factory=ValidationOptions)


@dataclass(frozen=True)
class B1MapParameters:
    protocol: str
    acquisition: AcquisitionParameters
    processing: ProcessingParameters
    mask: MaskOptions
    validation: ValidationOptions
    b1_files: Tuple[str, ...] = ()
    b0_files: Tuple[str, ...] = ()
    se_files: Tuple[str, ...] = ()
    ste_files: Tuple[str, ...] = ()
    custom_defaults: bool = False
    diagnostics: Tuple[Diagnostic, ...] = ()

    @property
    def b1_available(self) -> bool:
        return self.protocol not in NON_COMPUTING_TAGS

    @property
    def warnings(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.level == 'warning')

    def as_dict(self) -> dict:
        d = asdict(self)
        d['b1_available'] = self.b1_available
        return d


class _Notes:
    def __init__(self) -> None:
        self.items: List[Diagnostic] = []

    def warning(self, code: str, message: str) -> None:
        self.items.append(Diagnostic('warning', code, message))

    def info(self, code: str, message: str) -> None:
        self.items.append(Diagnostic('info', code, message))


@dataclass
class _Context:
    protocol: str
    b1_files: Tuple[str, ...]
    b0_files: Tuple[str, ...]
    metadata: MetadataLookup
    defaults: ProtocolDefaults
    custom_defaults: bool
    scafac: Optional[float]
    notes: _Notes

    def build(self, acquisition: AcquisitionParameters, **kwargs) -> B1MapParameters:
        return B1MapParameters(
            protocol=self.protocol,
            acquisition=acquisition,
            processing=kwargs.pop('processing', self.defaults.processing),
            mask=self.defaults.mask,
            validation=kwargs.pop('validation', self.defaults.validation),
            b1_files=self.b1_files,
            b0_files=self.b0_files,
            custom_defaults=self.custom_defaults,
            diagnostics=tuple(self.notes.items),
            **kwargs,
        )


def _scalar(value: Any) -> Optional[float]:
    """First numeric value of a metadata entry; None when empty, zero or non-numeric."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        if len(value) == 0:
            return None
        value = value[0]
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(v) or v == 0:
        return None
    return v


def _vector(value: Any) -> Optional[Tuple[float, ...]]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        value = [value]
    try:
        out = tuple(float(v) for v in value)
    except (TypeError, ValueError):
        return None
    return out or None


def _number_or_zero(value: Any) -> float:
    v = _scalar(value)
    return 0.0 if v is None else v


def _require_count(ctx: _Context, n: int) -> Tuple[str, ...]:
    if len(ctx.b1_files) != n:
        raise InvalidInputCount(
            f"Protocol '{ctx.protocol}' expects {n} B1 input volumes, got {len(ctx.b1_files)}."
        )
    return ctx.b1_files


def _descending_order(values: Sequence[float]) -> List[int]:
    # Stable: equal values keep their input order.
    return sorted(range(len(values)), key=lambda i: -values[i])


def _no_correction(protocol: str, b1_files, b0_files, notes: _Notes, custom_defaults: bool) -> B1MapParameters:
    return B1MapParameters(
        protocol=protocol,
        acquisition=AcquisitionParameters(),
        processing=ProcessingParameters(),
        mask=MaskOptions(),
        validation=ValidationOptions(),
        b1_files=tuple(b1_files),
        b0_files=tuple(b0_files),
        custom_defaults=custom_defaults,
        diagnostics=tuple(notes.items),
    )


def _resolve_afi(ctx: _Context) -> B1MapParameters:
    files = _require_count(ctx, 2)
    md, notes, acq = ctx.metadata, ctx.notes, ctx.defaults.acquisition

    tr1 = _scalar(md.get(files[0], 'RepetitionTime'))
    tr2 = _scalar(md.get(files[1], 'RepetitionTime'))
    if tr1 is not None and tr2 is not None and tr1 != tr2:
        ratio = tr2 / tr1
    else:
        notes.warning(
            'afi_tr_metadata',
            "The two repetition times in the AFI metadata are missing or equal. "
            "Trying the RepetitionTimes field...",
        )
        tr_list = _vector(md.get(files[0], 'RepetitionTimes'))
        if tr_list is None or len(tr_list) < 2:
            ratio = acq.tr2tr1_ratio
            if ratio is None or ratio == 1:
                raise InvalidAcquisition(
                    "The TR2/TR1 ratio is not allowed to be 1 in an AFI acquisition.\n"
                    "Check tr2tr1ratio in the B1 defaults file."
                )
            notes.warning('afi_tr_default', f"Using default TR ratio ({ratio:.1f}) instead of metadata.")
        else:
            if tr_list[1] == tr_list[0]:
                raise InvalidAcquisition(
                    "The two repetition times (TRs) are not allowed to be equal in an AFI acquisition.\n"
                    "Check the input data."
                )
            ratio = tr_list[1] / tr_list[0]

    alphanom = _scalar(md.get(files[0], 'FlipAngle'))
    if alphanom is None:
        alphanom = acq.alphanom
        notes.warning('flip_angle_default', f"Using default flip angle ({alphanom} deg) instead of metadata.")

    return ctx.build(replace(acq, tr2tr1_ratio=float(ratio), alphanom=alphanom))


def _resolve_dam(ctx: _Context) -> B1MapParameters:
    files = _require_count(ctx, 2)
    md, notes, acq = ctx.metadata, ctx.notes, ctx.defaults.acquisition

    # files[0]: 2*alpha image, files[1]: alpha image
    fa1 = _scalar(md.get(files[1], 'FlipAngle'))
    if fa1 is None:
        fa1 = acq.alphanom
        notes.warning('flip_angle_default', f"Using default flip angle ({fa1} deg) instead of metadata.")
    else:
        fa2 = _scalar(md.get(files[0], 'FlipAngle'))
        if fa2 is not None and not math.isclose(fa2, 2.0 * fa1, rel_tol=0.0, abs_tol=1e-9):
            notes.warning(
                'dam_flip_angle_mismatch',
                f"Flip angle of the first DAM volume ({fa2:g} deg) is not 2x the flip angle "
                f"of the second DAM volume ({fa1:g} deg). Please check the input data carefully.",
            )

    return ctx.build(replace(acq, alphanom=fa1))


def _resolve_scaled_map(ctx: _Context) -> B1MapParameters:
    files = _require_count(ctx, 2)
    md, notes, acq = ctx.metadata, ctx.notes, ctx.defaults.acquisition

    alphanom = _scalar(md.get(files[1], 'FlipAngle'))
    if alphanom is None:
        alphanom = acq.alphanom
        notes.warning('flip_angle_default', f"Using default flip angle ({alphanom} deg) instead of metadata.")
    return ctx.build(replace(acq, alphanom=alphanom))


def _resolve_pre_processed(ctx: _Context) -> B1MapParameters:
    _require_count(ctx, 2)
    acq = ctx.defaults.acquisition
    scafac = ctx.scafac if ctx.scafac is not None else (acq.scafac if acq.scafac is not None else 1.0)
    if scafac == 1:
        ctx.notes.info(
            'pre_processed_units',
            "Preprocessed B1 map available. Assuming it is in percent units of the nominal flip angle. "
            "No calculation required.",
        )
    else:
        ctx.notes.info(
            'pre_processed_scaling',
            f"Preprocessed B1 map available. Scaling factor provided: {scafac:f}. Assuming the B1 map will be "
            f"expressed in p.u. of the nominal flip angle after rescaling.",
        )
    return ctx.build(replace(acq, scafac=float(scafac)))


def _nominal_beta(ctx: _Context) -> Tuple[float, ...]:
    beta = _vector(ctx.metadata.get(ctx.b1_files[0], 'B1mapNominalFAValues'))
    if beta is None:
        beta = tuple(ctx.defaults.acquisition.beta)
        ctx.notes.warning(
            'nominal_fa_default',
            f"Using default nominal SE/STE flip angle values ({' '.join(f'{b:g}' for b in beta)}) instead of metadata.",
        )
    return beta


def _metadata_or_default(ctx: _Context, key: str, default: Optional[float], label: str, unit: str = '') -> Optional[float]:
    value = _scalar(ctx.metadata.get(ctx.b1_files[0], key))
    if value is None:
        ctx.notes.warning(
            f'{key}_default',
            f"Using default value for {label} ({default}{unit}) instead of metadata.",
        )
        return default
    return value


def _resolve_seste(ctx: _Context) -> B1MapParameters:
    files = ctx.b1_files
    md, notes = ctx.metadata, ctx.notes
    acq, processing, validation = ctx.defaults.acquisition, ctx.defaults.processing, ctx.defaults.validation

    if len(files) % 2 != 0:
        raise InvalidInputCount(
            "B1 mapping image volumes must be a set of SE, STE pairs, thus the number of "
            f"input volumes (currently {len(files)}) must be even."
        )

    check_tes = validation.check_tes
    echo_times: Tuple[float, ...] = ()
    if check_tes:
        tes = [_scalar(md.get(f, 'EchoTime')) for f in files]
        if any(t is None for t in tes):
            notes.warning(
                'no_echo_times',
                "No echo times found for the SE/STE input; input validation based on echo time will not be performed.",
            )
            check_tes = False
        else:
            echo_times = tuple(float(t) for t in tes)

    if check_tes:
        unique_tes = sorted(set(echo_times))
        if len(unique_tes) == 2:
            # Shorter TE is the spin echo, longer the stimulated echo.
            se = [f for f, t in zip(files, echo_times) if t == unique_tes[0]]
            ste = [f for f, t in zip(files, echo_times) if t == unique_tes[1]]
        else:
            if len(unique_tes) == 1:
                detail = "all data have the same echo time"
            else:
                detail = f"there are {len(unique_tes)} different echo times"
            notes.warning(
                'echo_time_count',
                "Expected 2 different echo times (spin echo and stimulated echo) in the 3D EPI input data, "
                f"but {detail}. Standard input order (SE, STE, SE, ...) is assumed; check this is correct.",
            )
            se, ste = list(files[0::2]), list(files[1::2])
    else:
        se, ste = list(files[0::2]), list(files[1::2])

    if len(se) != len(ste):
        raise InvalidInputCount(
            f"Number of spin echo volumes ({len(se)}) does not match the number of "
            f"stimulated echo volumes ({len(ste)})."
        )

    if validation.use_bids_flip_angle_field and _scalar(md.get(files[0], 'FlipAngle')) is None:
        notes.warning(
            'bids_flip_angle_missing',
            "use_bids_flip_angle_field is enabled but FlipAngle is empty or zero; "
            "falling back to the nominal flip angle list.",
        )
        beta = _nominal_beta(ctx)
    elif validation.use_bids_flip_angle_field:
        fa_se = [_number_or_zero(md.get(f, 'FlipAngle')) for f in se]
        fa_ste = [_number_or_zero(md.get(f, 'FlipAngle')) for f in ste]
        if sorted(fa_se) != sorted(fa_ste):
            raise FlipAngleMismatch(
                "The set of SE and STE flip angles must be identical.\n"
                f"SE: {fa_se}\nSTE: {fa_ste}"
            )
        if any(fa == 0 for fa in fa_se + fa_ste):
            notes.warning('zero_flip_angle', "Zero flip angles detected in SE/STE metadata. This is probably not correct.")
        se_order = _descending_order(fa_se)
        ste_order = _descending_order(fa_ste)
        beta = tuple(fa_se[i] for i in se_order)
        se = [se[i] for i in se_order]
        ste = [ste[i] for i in ste_order]
    else:
        beta = _nominal_beta(ctx)

    if len(se) != len(beta):
        raise InvalidInputCount(
            f"Number of B1 mapping image pairs ({len(se)}) does not match "
            f"the number of nominal flip angles ({len(beta)})."
        )

    # The ambiguity search expects pairs in decreasing nominal flip angle.
    order = _descending_order(beta)
    beta = tuple(float(beta[i]) for i in order)
    se = [se[i] for i in order]
    ste = [ste[i] for i in order]

    tm = _metadata_or_default(ctx, 'B1mapMixingTime', acq.tm, 'mixing time', ' ms')
    tert = _metadata_or_default(ctx, 'epiReadoutDuration', acq.tert, 'EPI readout duration', ' ms')
    blip_dir = _metadata_or_default(ctx, 'PhaseEncodingDirectionSign', acq.blip_dir, 'PE direction')

    field_strength = _scalar(md.get(files[0], 'MagneticFieldStrength'))
    if field_strength is not None:
        b0 = int(round(field_strength))
        expected_t1 = EXPECTED_T1_MS.get(b0)
        if expected_t1 is None:
            notes.warning(
                'unsupported_field_strength',
                f"Field strength (B0 = {field_strength:.0f}T) not supported. The reference T1 value for "
                f"that field strength is not implemented. Make sure the assumed value (T1 = {processing.t1:.0f} ms) "
                f"is correct, otherwise set it via a customized B1 defaults file.",
            )
        elif processing.t1 != expected_t1:
            if ctx.custom_defaults:
                notes.warning(
                    't1_field_strength_mismatch',
                    f"The assumed T1 value does not match the expected value for the field strength: "
                    f"B0 = {field_strength:.0f}T, T1 = {expected_t1:.0f}/{processing.t1:.0f} (expected/actual) ms. "
                    f"Recommended values are 1192 ms at 3T and 1633 ms at 7T.",
                )
            else:
                notes.info(
                    't1_set_for_field_strength',
                    f"The assumed T1 value has been set to match the field strength: "
                    f"B0 = {field_strength:.0f}T, T1 = {expected_t1:.0f} ms.",
                )
                processing = replace(processing, t1=expected_t1)

    if len(ctx.b0_files) != 3:
        raise InvalidInputCount(
            "SE/STE field-map correction expects 3 B0 input volumes "
            f"(magnitude echo 1, magnitude echo 2, phase difference), got {len(ctx.b0_files)}."
        )
    short_te = _scalar(md.get(ctx.b0_files[0], 'EchoTime'))
    if short_te is None:
        short_te = acq.short_te
        notes.warning('short_te_default', f"Using default B0 mapping short TE ({short_te:.2f} ms) instead of metadata.")
    long_te = _scalar(md.get(ctx.b0_files[1], 'EchoTime'))
    if long_te is None:
        long_te = acq.long_te
        notes.warning('long_te_default', f"Using default B0 mapping long TE ({long_te:.2f} ms) instead of metadata.")

    acquisition = replace(
        acq,
        beta=beta,
        echo_times=echo_times,
        tm=tm,
        tert=tert,
        blip_dir=blip_dir,
        field_strength=field_strength,
        short_te=short_te,
        long_te=long_te,
    )
    return ctx.build(
        acquisition,
        processing=processing,
        validation=replace(validation, check_tes=check_tes),
        se_files=tuple(se),
        ste_files=tuple(ste),
    )


_RESOLVERS = {
    'i3D_AFI': _resolve_afi,
    'i3D_EPI': _resolve_seste,
    'DAM': _resolve_dam,
    'tfl_b1_map': _resolve_scaled_map,
    'rf_map': _resolve_scaled_map,
    'pre_processed_B1': _resolve_pre_processed,
}


def resolve_b1map_params(
    protocol: str,
    b1_files: Sequence[str],
    b0_files: Sequence[str],
    metadata: MetadataLookup,
    defaults: ProtocolDefaults,
    *,
    custom_defaults: bool = False,
    scafac: Optional[float] = None,
) -> B1MapParameters:
    """Resolve the full parameter record for one subject run.

    Parameters
    ----------
    protocol:
        Protocol tag, see `PROTOCOL_TAGS`.
    b1_files, b0_files:
        Ordered input image paths.
    metadata:
        Object exposing ``get(path, key)``; returns None for absent keys.
    defaults:
        Protocol defaults (standard or customized).
    custom_defaults:
        True when ``defaults`` come from a user-supplied defaults file.
    scafac:
        Scale factor for ``pre_processed_B1``.
    """
    notes = _Notes()
    b1_files = tuple(str(f) for f in (b1_files or ()) if str(f).strip())
    b0_files = tuple(str(f) for f in (b0_files or ()) if str(f).strip())

    if protocol not in PROTOCOL_TAGS:
        notes.warning(
            'unknown_protocol',
            f"Unknown B1 processing method '{protocol}'; assuming \"no B1 correction\" mode.",
        )
        return _no_correction(NO_CORRECTION, b1_files, b0_files, notes, custom_defaults)

    if protocol == 'UNICORT':
        notes.info('unicort', "No B1 map available. UNICORT will be applied.")
        return _no_correction(protocol, b1_files, b0_files, notes, custom_defaults)

    if protocol == NO_CORRECTION:
        notes.info('no_correction', "No B1 map available. No B1 correction applied (semi-quantitative maps only).")
        return _no_correction(protocol, b1_files, b0_files, notes, custom_defaults)

    if not b1_files:
        notes.warning(
            'missing_b1_input',
            "Expected B1 input images missing. Switching to \"no B1 correction\" mode. "
            "If you meant to apply B1 bias correction, check your data and re-run.",
        )
        return _no_correction(NO_CORRECTION, b1_files, b0_files, notes, custom_defaults)

    if protocol == 'i3D_EPI' and not b0_files:
        notes.warning(
            'missing_b0_input',
            "Expected B0 fieldmap not available for EPI undistortion. SE/STE B1 mapping cannot be "
            "applied without it. Switching to \"no B1 correction\" mode.",
        )
        return _no_correction(NO_CORRECTION, b1_files, b0_files, notes, custom_defaults)

    ctx = _Context(
        protocol=protocol,
        b1_files=b1_files,
        b0_files=b0_files,
        metadata=metadata,
        defaults=defaults,
        custom_defaults=bool(custom_defaults),
        scafac=scafac,
        notes=notes,
    )
    return _RESOLVERS[protocol](ctx)
