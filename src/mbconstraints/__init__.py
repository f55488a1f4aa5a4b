from .constraints import Constraint, ConstraintConfig
from .custom import (
    Custom,
    CustomConfig,
    CustomImplementation,
    get_custom_implementation,
    register_custom_implementation,
)
from .errors import (
    BufferTooSmallError,
    ContractViolation,
    EquationCountMismatch,
    StageNotRealizedError,
)
from .force_conversion import GeneralizedForceConverter
from .indices import GROUND, ConstraintIndex, EquationCounts, EquationSlots, MobilizedBodyIndex
from .matter import MatterSubsystem
from .mjx_matter import MjxForceConverter, MjxMatter, MjxMatterConfig
from .spatial import SpatialVec, Transform
from .stage import Stage
from .state import State
from .subsystem import ConstraintSubsystem
from .tree_matter import (
    FreeMobilizer,
    Mobilizer,
    PinMobilizer,
    SliderMobilizer,
    TreeForceConverter,
    TreeMatter,
)
from .variants import (
    Ball,
    BallConfig,
    ConstantAngle,
    ConstantAngleConfig,
    ConstantOrientation,
    ConstantOrientationConfig,
    ConstantSpeed,
    ConstantSpeedConfig,
    NoSlip1D,
    NoSlip1DConfig,
    PointInPlane,
    PointInPlaneConfig,
    PointOnLine,
    PointOnLineConfig,
    Rod,
    RodConfig,
    Weld,
    WeldConfig,
)
