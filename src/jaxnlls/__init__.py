import jax

# Trust region bookkeeping relies on double precision.
jax.config.update("jax_enable_x64", True)

from . import utils as utils
from ._damping import NielsenDamping as NielsenDamping
from ._errors import BadFunctionError as BadFunctionError
from ._errors import DomainError as DomainError
from ._errors import LeastSquaresError as LeastSquaresError
from ._errors import NoProgressError as NoProgressError
from ._errors import Status as Status
from ._errors import UserCallbackError as UserCallbackError
from ._errors import status_from_exception as status_from_exception
from ._fdf import LeastSquaresFunction as LeastSquaresFunction
from ._linear_solvers import ConjugateGradientConfig as ConjugateGradientConfig
from ._linear_solvers import LinearSolver as LinearSolver
from ._parameters import Parameters as Parameters
from ._parameters import TerminationConfig as TerminationConfig
from ._scaling import ScalingPolicy as ScalingPolicy
from ._solver import LeastSquaresSolver as LeastSquaresSolver
from ._solver import SolveSummary as SolveSummary
from ._trs import TrustRegionSubproblem as TrustRegionSubproblem
from ._trs import TrustView as TrustView
from ._trust import TrustRegionDriver as TrustRegionDriver
from ._trust import step_accepted as step_accepted
from ._trust import update_radius as update_radius
