"""
Edge-Based Flow Solver

Ties the solver core together for one mesh partition. Every outer
iteration runs

    state store -> gradients/limiters -> interior fluxes -> boundary
    conditions (including mixed-out averaging) -> time advance -> state
    store update

and reports residual norms, non-physical point counts and solver
diagnostics to the convergence monitor.
"""

import numpy as np
from typing import Any, Dict, List, Optional
import logging

from .core.capabilities import AERODYNAMICS, TURBOMACHINERY, SolverCapabilities
from .core.exceptions import ConfigurationError
from .equations.equation_sets import EulerEquations, NavierStokesEquations, ScalarTransportEquations, create_equation_set
from .numerics.gradients import compute_gradient
from .numerics.limiters import create_limiter, neighbourhood_extrema
from .numerics.convective_fluxes import create_convective_scheme
from .numerics.viscous_fluxes import create_viscous_flux
from .numerics.source_terms import create_source_terms
from .boundary.markers import BoundaryKind, markers_from_config
from .boundary.dispatcher import BoundaryContext, BoundaryDispatcher
from .state_store import StateStore
from .flux_assembly import FluxAssembler
from .linear_algebra import BlockSparseSystem, ScipyLinearSolver
from .time_integration import TimeAdvance
from .turbomachinery import MixedOutAverager, TurbomachineryCapability
from .aerodynamics import AerodynamicsCapability
from .convergence_monitoring import ConvergenceMonitor, ResidualReport, ResidualTracker
from .parallel_computing import SerialCommunicator

logger = logging.getLogger(__name__)

TURBOMACHINERY_KINDS = frozenset({
    BoundaryKind.MIXING_PLANE, BoundaryKind.INLET_TOTAL, BoundaryKind.INLET_MASS_FLOW,
    BoundaryKind.OUTLET, BoundaryKind.ENGINE_INFLOW, BoundaryKind.ENGINE_EXHAUST,
})


class FlowSolver:
    """
    Solver instance of one equation set on one mesh partition.

    Owns the state store, the block system and all per-instance
    accumulators; nothing is shared between instances.
    """

    def __init__(self, config, mesh, communicator=None, linear_solver=None,
                 dispatcher: Optional[BoundaryDispatcher] = None):
        """
        Initialize flow solver.

        Args:
            config: SolverConfig
            mesh: DualMesh of this partition
            communicator: Partition communicator (serial by default)
            linear_solver: LinearSolver backend for implicit schemes
            dispatcher: BoundaryDispatcher, e.g. with extra registered handlers
        """
        self.config = config
        self.mesh = mesh
        self.communicator = communicator or SerialCommunicator()
        if mesh.halo is not None:
            mesh.halo.validate(mesh.n_owned, mesh.n_points)

        numerics = config.numerics
        self.equations = create_equation_set(config, mesh.n_dim)
        eq = self.equations
        self.compressible = isinstance(eq, EulerEquations)
        self.store = StateStore(mesh.n_points, eq.n_var, eq.n_prim, mesh.n_dim)

        convective = create_convective_scheme(numerics.convective_scheme, eq,
                                              numerics.entropy_fix, numerics.entropy_fix_parameter)
        viscous = None
        if (numerics.viscous or isinstance(eq, NavierStokesEquations)
                or (isinstance(eq, ScalarTransportEquations) and eq.diffusion_coefficient > 0.0)):
            viscous = create_viscous_flux(eq)
        self.limiter = create_limiter(numerics.limiter, numerics.venkatakrishnan_k)
        self.assembler = FluxAssembler(mesh, eq, convective, viscous,
                                       create_source_terms(config.sources, eq), numerics.muscl)

        if self.compressible:
            self.freestream = config.freestream.primitive(config.fluid, mesh.n_dim)
            self.averager = MixedOutAverager(eq, config.mixed_out, self.communicator)
        else:
            self.freestream = np.array([config.scalar.initial_value])
            self.averager = None

        self.markers = markers_from_config(config.markers)
        self.dispatcher = dispatcher or BoundaryDispatcher()
        self.dispatcher.bind(self.markers.values(), mesh, eq)

        system = None
        if config.time.is_implicit:
            if not numerics.compute_jacobians:
                raise ConfigurationError("Implicit time integration needs numerics.compute_jacobians")
            system = BlockSparseSystem(mesh.n_points, eq.n_var, mesh.edges, self.dispatcher.extra_pairs())
            linear_solver = linear_solver or ScipyLinearSolver.from_config(config.time.linear_solver)
            logger.info(f"Implicit system with {system.n_blocks} blocks of size {eq.n_var}, "
                        f"linear solver {config.time.linear_solver.method}")
        self.time_advance = TimeAdvance(config.time, mesh, eq, self.communicator, linear_solver, system)

        self.tracker = ResidualTracker(eq.conservative_names, mesh.n_dim)
        self.monitor = ConvergenceMonitor(config.convergence, eq.conservative_names)
        self.capabilities = self._configure_capabilities()

        self.iteration = 0
        self.boundary_fluxes: Dict[str, np.ndarray] = {}
        self.mixed_out: Dict[str, Any] = {}
        self.last_report: Optional[ResidualReport] = None
        self.initialized = False

    def _configure_capabilities(self) -> SolverCapabilities:
        capabilities = SolverCapabilities()
        if not self.compressible:
            return capabilities
        bindings = self.dispatcher.bindings
        walls = [b.name for b in bindings if b.kind.is_wall]
        if walls:
            freestream = self.config.freestream
            capabilities.add(AERODYNAMICS, AerodynamicsCapability(
                self.mesh, self.equations, self.freestream,
                (freestream.angle_of_attack, freestream.angle_of_sideslip),
                self.config.reference, walls, self.communicator,
            ))
        turbo = [b.name for b in bindings if b.kind in TURBOMACHINERY_KINDS]
        if turbo:
            capabilities.add(TURBOMACHINERY, TurbomachineryCapability(
                self.mesh, self.equations, self.averager, turbo
            ))
        if capabilities.names:
            logger.info(f"Solver capabilities: {', '.join(capabilities.names)}")
        return capabilities

    # State

    def initialize(self, primitive: Optional[np.ndarray] = None) -> None:
        """
        Set the initial state.

        Args:
            primitive: Primitive state, one row per point or a single row;
                the free-stream state when omitted
        """
        eq = self.equations
        if primitive is None:
            primitive = self.freestream
        primitive = np.broadcast_to(np.atleast_2d(np.asarray(primitive, dtype=float)),
                                    (self.mesh.n_points, eq.n_prim))
        self.store.set_solution(eq.to_conservative(primitive))
        self.update_primitive()
        self.iteration = 0
        self.monitor.reset()
        self.initialized = True
        logger.info(f"Initialized {self.mesh.n_points} points "
                    f"({self.mesh.n_owned} owned, {self.mesh.n_halo} halo)")

    def update_primitive(self) -> int:
        """
        Recompute primitive variables, clipping non-physical points.

        Returns:
            Number of owned points clipped
        """
        store = self.store
        V, U, bad = self.equations.recover_primitive(store.solution)
        store.primitive[:] = V
        store.solution[:] = U
        store.non_physical |= bad
        n_bad = int(np.sum(bad[:self.mesh.n_owned]))
        if n_bad:
            store.non_physical_count += n_bad
            points = self.mesh.global_index[np.flatnonzero(bad[:self.mesh.n_owned])[:5]]
            logger.warning(f"Clipped {n_bad} non-physical points (first: {points.tolist()})")
        return n_bad

    def exchange_halo(self, buffers=("solution", "primitive")) -> None:
        """Refresh halo rows of the named state store buffers."""
        for name in buffers:
            self.communicator.exchange_halo(getattr(self.store, name), self.mesh.halo)

    # Residual assembly

    def preprocess(self) -> None:
        """Primitive recovery, halo exchange, gradients and limiters ahead of flux assembly."""
        store = self.store
        numerics = self.config.numerics
        self.update_primitive()
        self.exchange_halo()

        if numerics.muscl or self.assembler.viscous is not None:
            gradient, degraded = compute_gradient(self.mesh, store.primitive, numerics.gradient_method,
                                                  numerics.lsq_singular_tolerance)
            store.gradient[:] = gradient
            store.gradient_degraded[:] = degraded
            n_degraded = int(np.sum(degraded[:self.mesh.n_owned]))
            if n_degraded:
                logger.warning(f"{n_degraded} least-squares gradients fell back to Green-Gauss")
            self.exchange_halo(("gradient",))

        if numerics.muscl:
            extrema = None
            if self.mesh.n_halo:
                extrema = neighbourhood_extrema(self.mesh, store.primitive)
                for array in extrema:
                    self.communicator.exchange_halo(array, self.mesh.halo)
            store.limiter[:] = self.limiter.compute(self.mesh, store.primitive, store.gradient, extrema)
            self.exchange_halo(("limiter",))
        store.halo_stale = False

    def assemble_residual(self, system=None) -> np.ndarray:
        """
        One complete assembly pass into store.residual (and the block system).

        Returns:
            The residual array of the state store
        """
        self.preprocess()
        store = self.store
        store.reset_residual()
        self.assembler.assemble_interior(store, system)

        context = BoundaryContext(
            mesh=self.mesh, store=store, equations=self.equations, assembler=self.assembler,
            freestream=self.freestream, system=system, time=self.time_advance.target_time,
            averager=self.averager, communicator=self.communicator,
        )
        self.boundary_fluxes = self.dispatcher.apply(context)
        self.mixed_out = context.mixed_out
        return store.residual

    # Iteration

    def _global_count(self, mask: np.ndarray) -> int:
        return int(self.communicator.global_reduction(int(np.sum(mask[:self.mesh.n_owned])), "sum"))

    def _monitored_value(self, report: ResidualReport) -> Optional[float]:
        if self.config.convergence.cauchy_elements <= 0:
            return None
        aero = self.capabilities.get(AERODYNAMICS)
        if aero is not None and aero.dynamic_pressure > 0.0:
            return aero.total_loads(self.store).coefficients['CD']
        return float(report.rms[0])

    def iterate(self) -> ResidualReport:
        """Run one outer (pseudo-time) iteration and report its residuals."""
        if not self.initialized:
            self.initialize()
        store = self.store
        self.iteration += 1
        store.non_physical[:] = False
        self.tracker.reset()

        result = self.time_advance.step(store, self.assemble_residual)
        self.update_primitive()

        self.tracker.accumulate(result.residual, self.mesh.coordinates, self.mesh.global_index, self.mesh.n_owned)
        report = self.tracker.finalize(self.iteration, self.communicator)
        report.non_physical_points = self._global_count(store.non_physical)
        report.degraded_gradients = self._global_count(store.gradient_degraded)
        report.linear_solver = result.linear_diagnostics()
        report.mixed_out = {name: state.diagnostics() for name, state in self.mixed_out.items()}

        self.monitor.update(report, self._monitored_value(report))
        self.last_report = report
        return report

    def solve(self, max_iterations: Optional[int] = None) -> Dict[str, Any]:
        """
        Iterate in pseudo time until a stopping criterion is met.

        Args:
            max_iterations: Overrides convergence.max_iterations

        Returns:
            Summary with convergence flag, iteration count and stop reasons
        """
        if not self.initialized:
            self.initialize()
        limit = self.config.convergence.max_iterations if max_iterations is None else max_iterations
        logger.info(f"Starting {self.config.time.scheme} iterations (limit {limit})")

        reasons: List[str] = []
        for _ in range(limit):
            self.iterate()
            stop, reasons = self.monitor.check_stopping_criteria()
            if stop:
                break
        else:
            reasons = reasons or ["Iteration limit reached"]

        converged = any(not reason.startswith(("Maximum", "Iteration limit", "Residual is not"))
                        for reason in reasons)
        if self.config.convergence.history_file:
            self.monitor.save_history(self.config.convergence.history_file)
        logger.info(f"Finished after {self.iteration} iterations: {'; '.join(reasons)}")
        return {
            'converged': converged,
            'iterations': self.iteration,
            'reasons': reasons,
            'final_rms': self.last_report.rms.tolist() if self.last_report is not None else None,
        }

    def advance_physical_time(self) -> ResidualReport:
        """
        One physical time step of dual time stepping.

        Runs inner pseudo-time iterations until the residual target is met
        or the inner iteration count is exhausted.
        """
        time_config = self.config.time
        if not time_config.is_dual_time:
            raise ConfigurationError("advance_physical_time needs time.time_marching set to a dual-time scheme")
        if not self.initialized:
            self.initialize()

        self.time_advance.start_physical_step(self.store)
        report = None
        for _ in range(time_config.inner_iterations):
            report = self.iterate()
            if report.log10_rms[0] < self.config.convergence.residual_target:
                break
        self.time_advance.finish_physical_step()
        logger.info(f"Physical time {self.time_advance.physical_time:.6g} "
                    f"(step {self.time_advance.physical_step}) after {report.iteration} iterations")
        return report

    def solve_physical_time(self, time_steps: int) -> Dict[str, Any]:
        """
        Run several dual-time physical steps.

        A step counts as converged when its inner iterations reached the
        residual target.

        Returns:
            Summary with convergence flag, iteration count and stop reasons
        """
        target = self.config.convergence.residual_target
        unconverged = []
        for _ in range(time_steps):
            report = self.advance_physical_time()
            if not report.log10_rms[0] < target:
                unconverged.append(self.time_advance.physical_step)
                logger.warning(f"Physical step {self.time_advance.physical_step}: inner iterations stopped at "
                               f"log10(RMS) {report.log10_rms[0]:+.3f} above target {target}")

        if unconverged:
            reasons = [f"Inner iterations missed the residual target in steps {unconverged}"]
        else:
            reasons = [f"Residual target {target} reached in every physical step"]
        if self.config.convergence.history_file:
            self.monitor.save_history(self.config.convergence.history_file)
        return {
            'converged': not unconverged,
            'iterations': self.iteration,
            'reasons': reasons,
            'physical_time': self.time_advance.physical_time,
            'final_rms': self.last_report.rms.tolist() if self.last_report is not None else None,
        }

    # Accessors

    def primitive(self) -> np.ndarray:
        return self.store.primitive[:self.mesh.n_owned].copy()

    def solution(self) -> np.ndarray:
        return self.store.solution[:self.mesh.n_owned].copy()

    def gradients(self) -> np.ndarray:
        return self.store.gradient[:self.mesh.n_owned].copy()

    def conservative_gradients(self) -> np.ndarray:
        """Conserved-variable gradients of the owned points, derived from the primitive ones."""
        n = self.mesh.n_owned
        return self.equations.conservative_gradient(self.store.primitive[:n], self.store.gradient[:n])

    def residual_norms(self) -> Optional[ResidualReport]:
        return self.last_report

    def forces(self):
        """Integrated wall loads and coefficients (aerodynamics capability)."""
        return self.capabilities.require(AERODYNAMICS).total_loads(self.store)

    def turbomachinery_performance(self, marker: Optional[str] = None):
        """Mixed-out performance of one marker, or of all turbomachinery markers."""
        turbo = self.capabilities.require(TURBOMACHINERY)
        if marker is None:
            return turbo.all_performance(self.store)
        return turbo.performance(self.store, marker)
