import configparser
import logging
import os
import re
from pathlib import Path
from typing import Optional, Tuple

import torch

from b1mappy.configs.paths import resolve_config_path, standard_defaults_path
from b1mappy.core.parameters import (
    PROTOCOL_TAGS,
    AcquisitionParameters,
    MaskOptions,
    ProcessingParameters,
    ProtocolDefaults,
    ValidationOptions,
)
from b1mappy.core.validation import ConfigurationError


# Protocols that consume B1 input volumes, with the number they expect.
EXPECTED_B1_INPUTS = {
    'i3D_AFI': 2,
    'DAM': 2,
    'tfl_b1_map': 2,
    'rf_map': 2,
    'pre_processed_B1': 2,
}


def split_file_list(raw: Optional[str]) -> list:
    """Split an INI file list (one per line, or comma separated) into paths."""
    if raw is None:
        return []
    return [p.strip() for p in re.split(r'[\n,]', str(raw)) if p.strip()]


def _get_float(section, key: str, fallback: Optional[float]) -> Optional[float]:
    if key not in section:
        return fallback
    raw = str(section[key]).strip()
    if raw == '':
        return fallback
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"Invalid {key} value in [{section.name}]: must be a number.\n"
            f"Current value: '{raw}'"
        )


def _get_int(section, key: str, fallback: int) -> int:
    value = _get_float(section, key, fallback)
    if value is None or float(value) != int(value):
        raise ConfigurationError(
            f"Invalid {key} value in [{section.name}]: must be an integer.\n"
            f"Current value: '{section.get(key)}'"
        )
    return int(value)


def _get_floats(section, key: str, fallback: Tuple[float, ...]) -> Tuple[float, ...]:
    if key not in section:
        return tuple(fallback)
    raw = str(section[key]).strip()
    if raw == '':
        return tuple(fallback)
    try:
        return tuple(float(v) for v in re.split(r'[\s,;]+', raw.strip('[]()')) if v)
    except ValueError:
        raise ConfigurationError(
            f"Invalid {key} value in [{section.name}]: must be a list of numbers.\n"
            f"Current value: '{raw}'"
        )


def _get_bool(section, key: str, fallback: bool) -> bool:
    if key not in section:
        return fallback
    try:
        return section.getboolean(key)
    except ValueError:
        raise ConfigurationError(
            f"Invalid {key} value in [{section.name}]: must be True or False.\n"
            f"Current value: '{section.get(key)}'"
        )


def load_protocol_defaults(protocol: str, custom_file: Optional[str] = None) -> Tuple[ProtocolDefaults, bool]:
    """Read the protocol defaults, with an optional customized file layered on top.

    Returns the defaults and whether a customized file was applied.
    """
    parser = configparser.ConfigParser()
    standard = standard_defaults_path()
    if not parser.read(str(standard), encoding='utf-8'):
        raise ConfigurationError(f"Standard B1 defaults file not found: {standard}")

    custom = False
    if custom_file:
        if not os.path.exists(custom_file):
            raise ConfigurationError(
                f"Customized B1 defaults file not found: {custom_file}\n"
                f"Specified in configuration as 'b1_defaults'."
            )
        parser.read(str(custom_file), encoding='utf-8')
        custom = True

    if not parser.has_section(protocol):
        return ProtocolDefaults(), custom

    sec = parser[protocol]
    base_acq = AcquisitionParameters()
    base_proc = ProcessingParameters()

    acquisition = AcquisitionParameters(
        alphanom=_get_float(sec, 'alphanom', base_acq.alphanom),
        tr2tr1_ratio=_get_float(sec, 'tr2tr1ratio', base_acq.tr2tr1_ratio),
        tm=_get_float(sec, 'tm', base_acq.tm),
        tert=_get_float(sec, 'tert', base_acq.tert),
        blip_dir=_get_float(sec, 'blipdir', base_acq.blip_dir),
        beta=_get_floats(sec, 'beta', base_acq.beta),
        short_te=_get_float(sec, 'shortte', base_acq.short_te),
        long_te=_get_float(sec, 'longte', base_acq.long_te),
        scafac=_get_float(sec, 'scafac', base_acq.scafac),
    )
    processing = ProcessingParameters(
        b1_fwhm=_get_floats(sec, 'b1fwhm', base_proc.b1_fwhm),
        domask=_get_bool(sec, 'domask', base_proc.domask),
        eps=_get_float(sec, 'eps', base_proc.eps),
        n_trusted=_get_int(sec, 'nonominalvalues', base_proc.n_trusted),
        n_ambiguous=_get_int(sec, 'nambiguousangles', base_proc.n_ambiguous),
        t1=_get_float(sec, 't1', base_proc.t1),
        hz_thresh=_get_float(sec, 'hzthresh', base_proc.hz_thresh),
        sd_thresh=_get_float(sec, 'sdthresh', base_proc.sd_thresh),
        erode_iterations=_get_int(sec, 'erodeb1', base_proc.erode_iterations),
        pad_iterations=_get_int(sec, 'padb1', base_proc.pad_iterations),
        fmap_fwhm=_get_float(sec, 'fmap_fwhm', base_proc.fmap_fwhm),
        b0_mask_brain=_get_bool(sec, 'b0maskbrain', base_proc.b0_mask_brain),
        pe_axis=_get_int(sec, 'pe_axis', base_proc.pe_axis),
    )
    if processing.pe_axis not in (0, 1, 2):
        raise ConfigurationError(
            f"Invalid pe_axis in [{protocol}]: {processing.pe_axis}\n"
            f"Valid values: 0 | 1 | 2 (voxel axis of the phase-encoding direction)"
        )
    validation = ValidationOptions(
        check_tes=_get_bool(sec, 'checktes', True),
        use_bids_flip_angle_field=_get_bool(sec, 'usebidsflipanglefield', False),
    )

    mask = MaskOptions()
    if parser.has_section('b1mask'):
        msec = parser['b1mask']
        mask = MaskOptions(
            median_radius=_get_int(msec, 'median_radius', mask.median_radius),
            numpass=_get_int(msec, 'numpass', mask.numpass),
            dilate=_get_int(msec, 'dilate', mask.dilate),
        )

    return ProtocolDefaults(acquisition=acquisition, processing=processing, mask=mask, validation=validation), custom


class configuration:
    def __init__(self, cfg_file) -> None:
        self.cfg_file = cfg_file
        self._validate_config(cfg_file)  # Validate before setup
        self._setup_config(cfg_file)

    @staticmethod
    def _normalize_output_mode(value: Optional[str]) -> str:
        if value is None:
            return 'standard'
        v = str(value).strip().lower()
        if v in {'', 'standard', 'std', 'default'}:
            return 'standard'
        if v in {'quiet', 'q'}:
            return 'quiet'
        if v in {'verbose', 'v'}:
            return 'verbose'
        if v in {'debug', 'dbg'}:
            return 'debug'
        raise ConfigurationError(
            "Invalid output_mode value.\n"
            "Valid options: quiet | standard | verbose | debug\n"
            f"Current value: '{value}'"
        )

    @property
    def output_mode(self) -> str:
        return str(getattr(self, '_output_mode', 'standard'))

    @property
    def verbose_flag(self) -> bool:
        return self.output_mode in {'verbose', 'debug'}

    def _cfg_source(self, input_cfg_file) -> Optional[str]:
        try:
            if input_cfg_file.has_section('DEBUG'):
                return str(input_cfg_file.get('DEBUG', 'cfg_source', fallback='')).strip() or None
        except configparser.Error:
            return None
        return None

    def _resolve_files(self, input_cfg_file, key: str) -> list:
        cfg_source = self._cfg_source(input_cfg_file)
        raw = input_cfg_file.get('INPUT', key, fallback='')
        return [resolve_config_path(p, cfg_source=cfg_source) for p in split_file_list(raw)]

    def _validate_config(self, input_cfg_file) -> None:
        """Validate configuration file for required sections/options and file paths."""
        if not input_cfg_file.has_section('INPUT'):
            raise ConfigurationError(
                "Missing required section [INPUT] in configuration file.\n"
                "Check your .ini file and ensure all required sections are present."
            )

        b1_type = str(input_cfg_file.get('INPUT', 'b1_type', fallback='')).strip()
        if not b1_type:
            raise ConfigurationError(
                "Missing required field 'b1_type' in [INPUT] section.\n"
                f"Valid options: {', '.join(PROTOCOL_TAGS)}\n"
                "Add 'b1_type = i3D_AFI' (or another protocol) to your configuration."
            )

        missing_files = []
        for key in ('b1_files', 'b0_files'):
            for p in self._resolve_files(input_cfg_file, key):
                if not os.path.exists(p):
                    missing_files.append(f"[INPUT] {key} -> {p}")
        if missing_files:
            raise ConfigurationError(
                "Input image paths are missing or do not exist.\n\n" + "\n".join(f"- {m}" for m in missing_files)
            )

        expected = EXPECTED_B1_INPUTS.get(b1_type)
        n_b1 = len(self._resolve_files(input_cfg_file, 'b1_files'))
        if expected is not None and n_b1 not in (0, expected):
            raise ConfigurationError(
                f"Protocol '{b1_type}' expects {expected} files in [INPUT] b1_files, got {n_b1}.\n"
                f"See the template configuration for the expected order."
            )

        if input_cfg_file.has_option('INPUT', 'scafac'):
            raw = str(input_cfg_file.get('INPUT', 'scafac')).strip()
            if raw:
                try:
                    float(raw)
                except ValueError:
                    raise ConfigurationError(
                        "Invalid scafac value: must be a number.\n" f"Current value: '{raw}'"
                    )

        if input_cfg_file.has_option('GLOBAL', 'b1_defaults'):
            raw = str(input_cfg_file.get('GLOBAL', 'b1_defaults')).strip()
            if raw:
                resolved = resolve_config_path(raw, cfg_source=self._cfg_source(input_cfg_file))
                if not os.path.exists(resolved):
                    raise ConfigurationError(
                        f"Customized B1 defaults file not found: {raw}\n"
                        f"Specified in configuration as 'b1_defaults'.\n"
                        f"Leave it blank to use the standard defaults."
                    )

        if input_cfg_file.has_section('DEVICE'):
            dev = str(input_cfg_file.get('DEVICE', 'DEVICE', fallback='')).strip().lower()
            if dev not in {'', 'auto', 'cpu', 'cuda'}:
                raise ConfigurationError(
                    f"Invalid [DEVICE] DEVICE: '{dev}'\n" "Valid values: auto | cpu | cuda"
                )
            raw_jobs = str(input_cfg_file.get('DEVICE', 'n_jobs', fallback='1')).strip() or '1'
            try:
                n_jobs = int(raw_jobs)
            except ValueError:
                raise ConfigurationError(
                    "Invalid [DEVICE] n_jobs value: must be an integer.\n" f"Current value: '{raw_jobs}'"
                )
            if n_jobs == 0 or n_jobs < -1:
                raise ConfigurationError(
                    f"Invalid [DEVICE] n_jobs: {n_jobs}\n"
                    "Use a positive number of concurrent slabs, or -1 for all cores."
                )

        logging.debug("Configuration validation passed")

    def _setup_config(self, input_cfg_file) -> None:
        # Input Parameters
        self.b1_type = str(input_cfg_file['INPUT']['b1_type']).strip()
        self.b1_files = self._resolve_files(input_cfg_file, 'b1_files')
        self.b0_files = self._resolve_files(input_cfg_file, 'b0_files')
        raw_scafac = str(input_cfg_file.get('INPUT', 'scafac', fallback='')).strip()
        self.scafac = float(raw_scafac) if raw_scafac else None

        # Output mode: [GLOBAL] output_mode, then [DEBUG] output_mode, then legacy [DEBUG] verbose.
        raw_output_mode = input_cfg_file.get('GLOBAL', 'output_mode', fallback=None)
        if raw_output_mode is None:
            raw_output_mode = input_cfg_file.get('DEBUG', 'output_mode', fallback=None)
        if raw_output_mode is None and input_cfg_file.has_option('DEBUG', 'verbose'):
            try:
                legacy_verbose = input_cfg_file.getboolean('DEBUG', 'verbose', fallback=False)
            except ValueError:
                legacy_verbose = False
            raw_output_mode = 'verbose' if legacy_verbose else 'standard'
        self._output_mode = self._normalize_output_mode(raw_output_mode)

        # Defaults (standard, optionally customized)
        raw_defaults = str(input_cfg_file.get('GLOBAL', 'b1_defaults', fallback='')).strip()
        self.b1_defaults_path = (
            resolve_config_path(raw_defaults, cfg_source=self._cfg_source(input_cfg_file)) if raw_defaults else None
        )
        if self.b1_type in PROTOCOL_TAGS:
            self.defaults, self.custom_defaults = load_protocol_defaults(self.b1_type, self.b1_defaults_path)
        else:
            self.defaults, self.custom_defaults = ProtocolDefaults(), bool(self.b1_defaults_path)

        # Output
        self.save_dir_override = None
        self.run_tag = None
        if input_cfg_file.has_section('OUTPUT'):
            raw_save_dir = str(input_cfg_file.get('OUTPUT', 'save_dir', fallback='')).strip()
            if raw_save_dir:
                save_dir = Path(raw_save_dir)
                if not save_dir.is_absolute():
                    cfg_source = self._cfg_source(input_cfg_file)
                    base = Path(cfg_source).resolve().parent if cfg_source else Path.cwd()
                    save_dir = base / save_dir
                self.save_dir_override = str(save_dir)
            raw_run_tag = str(input_cfg_file.get('OUTPUT', 'run_tag', fallback='')).strip()
            if raw_run_tag:
                # Keep filenames filesystem-friendly.
                self.run_tag = ''.join(
                    (c if (c.isalnum() or c in {'-', '_'}) else '_') for c in raw_run_tag
                ).strip('_') or None

        # Computing
        default_device = 'cuda' if torch.cuda.is_available() else 'cpu'
        device_norm = str(input_cfg_file.get('DEVICE', 'DEVICE', fallback='cpu')).strip().lower()
        if device_norm in {'', 'auto'}:
            device_norm = default_device
        elif device_norm == 'cuda' and not torch.cuda.is_available():
            logging.warning("[DEVICE] DEVICE=cuda requested but CUDA is not available; falling back to cpu")
            device_norm = 'cpu'
        self.DEVICE = device_norm
        self.n_jobs = int(str(input_cfg_file.get('DEVICE', 'n_jobs', fallback='1')).strip() or '1')
