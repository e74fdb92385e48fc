"""
Settings of the wrapped segmentation tools and their command lines.

One frozen settings object describes one tool invocation. ``to_cmd_line``
turns it into the argument list handed to ``subprocess.Popen``; every bucket
of a run uses the same settings with its own input directory.

Usage:
    from cellpose_timelapse.detection.settings import CellposeSettings, PretrainedModel

    settings = CellposeSettings(
        executable_path='/opt/envs/cellpose/bin/python',
        model=PretrainedModel('nuclei'),
        diameter=12.5,
        use_gpu=False,
    )
    cmd = settings.to_cmd_line('/tmp/cellpose_timelapse_abc123')
    # ['/opt/envs/cellpose/bin/python', '-m', 'cellpose', '--verbose', '--dir', ...]
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, List, Tuple, Union


@dataclass(frozen=True)
class PretrainedModel:
    """A model shipped with the tool, passed by name."""
    name: str

    is_custom: ClassVar[bool] = False

    @property
    def path(self) -> str:
        return self.name


@dataclass(frozen=True)
class CustomModel:
    """A user-trained model, passed by file path."""
    path: str

    is_custom: ClassVar[bool] = True

    @property
    def name(self) -> str:
        return Path(self.path).name


ModelSpec = Union[PretrainedModel, CustomModel]

CELLPOSE_MODELS: Tuple[str, ...] = ("cyto", "nuclei", "cyto2", "cyto3")
OMNIPOSE_MODELS: Tuple[str, ...] = ("bact_phase_omni", "bact_fluor_omni", "cyto2_omni")

OUTPUT_FORMATS = ("png", "tif")


def _fmt(value: float) -> str:
    return str(float(value))


@dataclass(frozen=True)
class CellposeSettings:
    """
    Parameters of a Cellpose command-line run.

    Attributes:
        executable_path: Python interpreter of the tool's environment, or the
            tool executable itself
        model: Pretrained model name or custom model path
        chan: Channel to segment (0 = grayscale, 1-based otherwise)
        chan2: Optional nuclear channel, -1 for none
        diameter: Expected object diameter in pixels, 0 to let the tool estimate it
        use_gpu: Run the tool on GPU
        simplify_contours: Simplify 2D object contours after detection
        do_3d: Segment Z stacks as volumes
        output_format: Mask file format requested from the tool, png or tif;
            ignored when do_3d, which always saves tif
    """
    executable_path: str
    model: ModelSpec = field(default_factory=lambda: PretrainedModel("cyto"))
    chan: int = 0
    chan2: int = -1
    diameter: float = 30.0
    use_gpu: bool = True
    simplify_contours: bool = True
    do_3d: bool = False
    output_format: str = "png"

    tool_name: ClassVar[str] = "cellpose"
    display_name: ClassVar[str] = "Cellpose"
    mask_suffix: ClassVar[str] = "_cp_masks"

    def __post_init__(self):
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"output_format must be one of {OUTPUT_FORMATS}, got '{self.output_format}'"
            )
        if self.diameter < 0:
            raise ValueError(f"diameter must be >= 0, got {self.diameter}")

    @property
    def mask_extension(self) -> str:
        """Mask file extension; 3D runs always save TIFF, PNG cannot hold a stack."""
        return "tif" if self.do_3d else self.output_format

    @property
    def log_file(self) -> Path:
        """Log file the tool appends its progress to."""
        return Path.home() / f".{self.tool_name}" / "run.log"

    def mask_file_name(self, frame_name: str) -> str:
        """Name of the mask the tool writes for an input named ``frame_name``."""
        return f"{frame_name}{self.mask_suffix}.{self.mask_extension}"

    def _launcher(self) -> List[str]:
        # Interpreter or tool executable, judged on the last path component
        last = self.executable_path.replace("\\", "/").split("/")[-1]
        if last.lower().startswith("python"):
            return [self.executable_path, "-m", self.tool_name]
        return [self.executable_path]

    def _z_args(self, is_3d: bool, anisotropy: float) -> List[str]:
        if not is_3d:
            return []
        return ["--do_3D", "--anisotropy", _fmt(anisotropy)]

    def to_cmd_line(
        self,
        images_dir: Union[str, Path],
        is_3d: bool = False,
        anisotropy: float = 1.0,
    ) -> List[str]:
        """
        Build the tool command line for one input directory.

        Args:
            images_dir: Directory holding the frames to segment
            is_3d: Whether the frames are Z stacks segmented as volumes
            anisotropy: Z to XY pixel size ratio, used when ``is_3d``

        Returns:
            Argument list, executable first
        """
        cmd = self._launcher()
        cmd += ["--verbose", "--dir", str(images_dir), "--chan", str(self.chan)]
        if self.chan2 >= 0:
            cmd += ["--chan2", str(self.chan2)]
        if self.use_gpu:
            cmd.append("--use_gpu")
        cmd += ["--diameter", _fmt(self.diameter) if self.diameter > 0 else "0"]
        cmd += self._z_args(is_3d, anisotropy)
        cmd += ["--pretrained_model", str(self.model.path)]
        cmd.append(f"--save_{self.mask_extension}")
        cmd.append("--no_npy")
        return cmd


def _check_stitch_threshold(value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"stitch_threshold must be in [0, 1], got {value}")


def _stitch_z_args(stitch_threshold: float) -> List[str]:
    # Each slice is segmented in 2D and labels overlapping above the
    # threshold are joined across slices
    return ["--stitch_threshold", _fmt(stitch_threshold)]


@dataclass(frozen=True)
class AdvancedCellposeSettings(CellposeSettings):
    """
    Cellpose with explicit thresholds, 2D + Z stitching and resampling.

    Attributes:
        flow_threshold: Maximum flow error of a kept mask
        cellprob_threshold: Cell probability above which pixels are foreground
        stitch_threshold: When > 0, Z stacks are segmented slice by slice and
            stitched by label overlap instead of as volumes
        resample: Compute the masks on the image resized to the model's object
            size, rather than on the network output
    """
    flow_threshold: float = 0.4
    cellprob_threshold: float = 0.0
    stitch_threshold: float = 0.0
    resample: bool = True

    def __post_init__(self):
        super().__post_init__()
        _check_stitch_threshold(self.stitch_threshold)

    def _z_args(self, is_3d, anisotropy):
        if is_3d and self.stitch_threshold > 0:
            return _stitch_z_args(self.stitch_threshold)
        return super()._z_args(is_3d, anisotropy)

    def to_cmd_line(self, images_dir, is_3d=False, anisotropy=1.0):
        cmd = super().to_cmd_line(images_dir, is_3d, anisotropy)
        cmd += [
            "--flow_threshold", _fmt(self.flow_threshold),
            "--cellprob_threshold", _fmt(self.cellprob_threshold),
        ]
        if not self.resample:
            cmd.append("--no_resample")
        return cmd


@dataclass(frozen=True)
class OmniposeSettings(CellposeSettings):
    """Omnipose run. Same command line and mask naming as Cellpose."""
    model: ModelSpec = field(default_factory=lambda: PretrainedModel("bact_phase_omni"))

    tool_name: ClassVar[str] = "omnipose"
    display_name: ClassVar[str] = "Omnipose"


@dataclass(frozen=True)
class AdvancedOmniposeSettings(OmniposeSettings):
    """Omnipose with explicit flow and mask thresholds, stitching and resampling."""
    flow_threshold: float = 0.4
    cellprob_threshold: float = 0.0
    stitch_threshold: float = 0.0
    resample: bool = True

    def __post_init__(self):
        super().__post_init__()
        _check_stitch_threshold(self.stitch_threshold)

    def _z_args(self, is_3d, anisotropy):
        if is_3d and self.stitch_threshold > 0:
            return _stitch_z_args(self.stitch_threshold)
        return super()._z_args(is_3d, anisotropy)

    def to_cmd_line(self, images_dir, is_3d=False, anisotropy=1.0):
        cmd = super().to_cmd_line(images_dir, is_3d, anisotropy)
        # Omnipose still uses the Cellpose 1 name for the probability threshold
        cmd += [
            "--flow_threshold", _fmt(self.flow_threshold),
            "--mask_threshold", _fmt(self.cellprob_threshold),
        ]
        if not self.resample:
            cmd.append("--no_resample")
        return cmd
