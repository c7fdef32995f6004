"""
Boundary Condition Handlers

One function per boundary kind, all with the signature
handler(context, binding) -> flux per vertex. Weak conditions build an
exterior (ghost) state and hand it to the assembler's boundary flux;
walls add their pressure flux directly; strong conditions overwrite the
state, residual rows and Jacobian rows of their vertices.

Exterior states of inflow/outflow kinds follow the usual characteristic
treatment with the Riemann invariants R± = u_n ± 2c/(γ-1), u_n taken
along the outward normal.
"""

import numpy as np
from typing import Dict
import logging

from ..core.exceptions import ConfigurationError
from ..equations.equation_sets import EulerEquations
from .dispatcher import BoundaryContext, MarkerBinding
from .markers import BoundaryKind

logger = logging.getLogger(__name__)


def _unit(normals: np.ndarray) -> np.ndarray:
    areas = np.linalg.norm(normals, axis=1)
    return normals / np.where(areas > 0.0, areas, 1.0)[:, None]


def _normal_velocity(eq: EulerEquations, V: np.ndarray, unit_normals: np.ndarray) -> np.ndarray:
    return np.sum(V[:, eq.velocity] * unit_normals, axis=1)


def _interior(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    return context.store.primitive[binding.geometry.vertices].copy()


def _weak_flux(context: BoundaryContext, binding: MarkerBinding, V_ghost: np.ndarray) -> np.ndarray:
    geometry = binding.geometry
    return context.assembler.boundary_flux(context.store, geometry.vertices, V_ghost,
                                           geometry.normals, context.system)


def _freeze_rows(store, vertices: np.ndarray, columns=None) -> None:
    """Flag strongly imposed rows and carry their values into the stage base state."""
    rows = (vertices, slice(None)) if columns is None else np.ix_(vertices, columns)
    store.solution_old[rows] = store.solution[rows]
    store.strong_rows[rows] = True
    store.residual[rows] = 0.0
    store.mark_modified()


def _direction(context: BoundaryContext, binding: MarkerBinding, unit_normals: np.ndarray) -> np.ndarray:
    """Flow direction parameter, defaulting to the inward normal of each vertex."""
    direction = binding.marker.vector("flow_direction", context.equations.n_dim, context.time)
    if direction is None:
        return -unit_normals
    magnitude = np.linalg.norm(direction)
    if magnitude == 0.0:
        raise ConfigurationError(f"Marker '{binding.name}': flow direction must not be zero")
    return np.broadcast_to(direction / magnitude, unit_normals.shape)


# Exterior states

def characteristic_ghost(eq: EulerEquations, V_interior: np.ndarray, V_exterior: np.ndarray,
                         unit_normals: np.ndarray) -> np.ndarray:
    """
    Exterior state from the outgoing invariant of the interior and the
    incoming invariant of a reference exterior state.

    Entropy and tangential velocity come from the exterior on inflow and
    from the interior on outflow; supersonic faces take the upwind state.
    """
    V_exterior = np.broadcast_to(V_exterior, V_interior.shape)
    g, g1 = eq.gamma, eq.gas.gamma_minus_1
    pi = eq.pressure_index
    un_i = _normal_velocity(eq, V_interior, unit_normals)
    un_e = _normal_velocity(eq, V_exterior, unit_normals)
    c_i = eq.sound_speed(V_interior)
    c_e = eq.sound_speed(V_exterior)

    r_plus = un_i + 2.0 * c_i / g1
    r_minus = un_e - 2.0 * c_e / g1
    un_b = 0.5 * (r_plus + r_minus)
    c_b = np.maximum(0.25 * g1 * (r_plus - r_minus), 1e-12)

    inflow = un_b < 0.0
    reference = np.where(inflow[:, None], V_exterior, V_interior)
    un_ref = np.where(inflow, un_e, un_i)
    entropy = reference[:, pi] / reference[:, 0] ** g
    rho_b = (c_b**2 / (g * entropy)) ** (1.0 / g1)
    p_b = rho_b * c_b**2 / g
    velocity_b = reference[:, eq.velocity] + (un_b - un_ref)[:, None] * unit_normals
    ghost = np.column_stack([rho_b, velocity_b, p_b])

    supersonic = np.abs(un_i) >= c_i
    ghost[supersonic & (un_i < 0.0)] = V_exterior[supersonic & (un_i < 0.0)]
    ghost[supersonic & (un_i >= 0.0)] = V_interior[supersonic & (un_i >= 0.0)]
    return ghost


def total_condition_ghost(eq: EulerEquations, V_interior: np.ndarray, unit_normals: np.ndarray,
                          total_pressure: float, total_temperature: float,
                          direction: np.ndarray) -> np.ndarray:
    """
    Subsonic inflow state with prescribed total pressure, total temperature
    and flow direction.

    The speed |V| solves the quadratic obtained by combining the outgoing
    invariant u_n + 2c/(γ-1) with c² = c0² - (γ-1)/2 |V|².
    """
    gas = eq.gas
    g, g1 = eq.gamma, gas.gamma_minus_1
    half = 0.5 * g1
    r_plus = _normal_velocity(eq, V_interior, unit_normals) + 2.0 * eq.sound_speed(V_interior) / g1
    cos_theta = np.sum(direction * unit_normals, axis=1)
    c0_squared = g * gas.R * total_temperature

    a = half * (half * cos_theta**2 + 1.0)
    b = -2.0 * half**2 * r_plus * cos_theta
    c = half**2 * r_plus**2 - c0_squared
    discriminant = np.maximum(b**2 - 4.0 * a * c, 0.0)
    speed = np.maximum((-b + np.sqrt(discriminant)) / (2.0 * a), 0.0)

    c_squared = np.maximum(c0_squared - half * speed**2, 1e-12)
    temperature = c_squared / (g * gas.R)
    pressure = total_pressure * (temperature / total_temperature) ** (g / g1)
    density = gas.density(pressure, temperature)
    return np.column_stack([density, speed[:, None] * direction, pressure])


def static_pressure_ghost(eq: EulerEquations, V_interior: np.ndarray, unit_normals: np.ndarray,
                          pressure) -> np.ndarray:
    """
    Subsonic outflow state with prescribed static pressure.

    Density follows from the interior entropy, the normal velocity from
    the outgoing invariant. Supersonic outflow ignores the pressure.
    """
    g, g1 = eq.gamma, eq.gas.gamma_minus_1
    pi = eq.pressure_index
    pressure = np.broadcast_to(np.asarray(pressure, dtype=float), (V_interior.shape[0],))
    un_i = _normal_velocity(eq, V_interior, unit_normals)
    c_i = eq.sound_speed(V_interior)
    entropy = V_interior[:, pi] / V_interior[:, 0] ** g

    rho_b = (pressure / entropy) ** (1.0 / g)
    c_b = np.sqrt(g * pressure / rho_b)
    un_b = un_i + 2.0 * (c_i - c_b) / g1
    velocity_b = V_interior[:, eq.velocity] + (un_b - un_i)[:, None] * unit_normals
    ghost = np.column_stack([rho_b, velocity_b, pressure])

    supersonic = un_i >= c_i
    ghost[supersonic] = V_interior[supersonic]
    return ghost


# Walls

def euler_wall(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """Slip wall: only the pressure crosses the face, F = [0, p n, 0]."""
    eq = context.equations
    geometry = binding.geometry
    flux = np.zeros((geometry.n_vertices, eq.n_var))
    if not isinstance(eq, EulerEquations):
        return flux

    V = context.store.primitive[geometry.vertices]
    flux[:, eq.velocity] = V[:, eq.pressure_index][:, None] * geometry.normals
    jacobian = None
    if context.implicit:
        jacobian = np.zeros((geometry.n_vertices, eq.n_var, eq.n_var))
        jacobian[:, eq.velocity, :] = geometry.normals[:, :, None] * eq.pressure_derivative(V)[:, None, :]
    context.assembler.add_boundary_residual(context.store, geometry.vertices, flux, jacobian, context.system)
    return flux


def _no_slip_wall(context: BoundaryContext, binding: MarkerBinding, wall_temperature=None) -> np.ndarray:
    eq = context.equations
    store = context.store
    geometry = binding.geometry
    vertices = geometry.vertices

    V = store.primitive[vertices]
    flux = np.zeros((geometry.n_vertices, eq.n_var))
    flux[:, eq.velocity] = V[:, eq.pressure_index][:, None] * geometry.normals

    V[:, eq.velocity] = 0.0
    strong = list(range(eq.velocity.start, eq.velocity.stop))
    if wall_temperature is None:
        heat_flux = binding.marker.parameter("heat_flux", 0.0, context.time)
        # Heat entering the fluid leaves the control volume with negative sign
        flux[:, eq.energy_index] = -heat_flux * geometry.areas
        np.add.at(store.residual[:, eq.energy_index], vertices, flux[:, eq.energy_index])
    else:
        V[:, eq.pressure_index] = eq.gas.pressure(V[:, 0], wall_temperature)
        strong.append(eq.energy_index)

    store.primitive[vertices] = V
    store.solution[vertices] = eq.to_conservative(V)
    _freeze_rows(store, vertices, strong)
    if context.implicit:
        context.system.set_identity_rows(vertices, strong)
    return flux


def heatflux_wall(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """No-slip wall with prescribed heat flux (zero by default)."""
    return _no_slip_wall(context, binding)


def isothermal_wall(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """No-slip wall at prescribed temperature."""
    return _no_slip_wall(context, binding, binding.marker.parameter("temperature", time=context.time))


# Characteristic inflow/outflow

def far_field(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    V_interior = _interior(context, binding)
    eq = context.equations
    if not isinstance(eq, EulerEquations):
        ghost = np.broadcast_to(context.freestream, V_interior.shape).copy()
    else:
        ghost = characteristic_ghost(eq, V_interior, context.freestream, binding.geometry.unit_normals)
    return _weak_flux(context, binding, ghost)


def riemann(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """Characteristic condition against a static state given on the marker."""
    eq = context.equations
    marker = binding.marker
    velocity = marker.vector("velocity", eq.n_dim, context.time)
    exterior = eq.primitive_from_pt(
        marker.parameter("pressure", time=context.time),
        marker.parameter("temperature", time=context.time),
        np.zeros(eq.n_dim) if velocity is None else velocity,
    )[0]
    V_interior = _interior(context, binding)
    return _weak_flux(context, binding,
                      characteristic_ghost(eq, V_interior, exterior, binding.geometry.unit_normals))


def inlet_total(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    eq = context.equations
    marker = binding.marker
    unit_normals = binding.geometry.unit_normals
    ghost = total_condition_ghost(
        eq, _interior(context, binding), unit_normals,
        marker.parameter("total_pressure", time=context.time),
        marker.parameter("total_temperature", time=context.time),
        _direction(context, binding, unit_normals),
    )
    return _weak_flux(context, binding, ghost)


def inlet_mass_flow(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """
    Prescribed mass flow through the whole marker and total temperature.

    Density is extrapolated from the interior; the speed follows from the
    mass flux per unit area.
    """
    eq = context.equations
    marker = binding.marker
    geometry = binding.geometry
    unit_normals = geometry.unit_normals
    owned = geometry.vertices < context.mesh.n_owned
    area = float(np.sum(geometry.areas[owned]))
    if context.communicator is not None:
        area = float(context.communicator.global_reduction(area, "sum"))
    if area <= 0.0:
        raise ConfigurationError(f"Marker '{marker.name}': mass-flow inlet needs a positive area")

    V_interior = _interior(context, binding)
    mass_flux = marker.parameter("mass_flow", time=context.time) / area
    density = V_interior[:, 0]
    speed = mass_flux / density
    temperature = np.maximum(
        marker.parameter("total_temperature", time=context.time) - 0.5 * speed**2 / eq.gas.cp, 1e-6
    )
    direction = _direction(context, binding, unit_normals)
    ghost = np.column_stack([density, speed[:, None] * direction, eq.gas.pressure(density, temperature)])
    return _weak_flux(context, binding, ghost)


def supersonic_inlet(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """Fully prescribed exterior state from pressure, temperature and velocity (or Mach number)."""
    eq = context.equations
    marker = binding.marker
    pressure = marker.parameter("pressure", time=context.time)
    temperature = marker.parameter("temperature", time=context.time)
    velocity = marker.vector("velocity", eq.n_dim, context.time)
    n_vertex = binding.geometry.n_vertices
    if velocity is None:
        mach = marker.parameter("mach", time=context.time)
        speed = mach * eq.gas.speed_of_sound_from_temperature(temperature)
        velocity = speed * _direction(context, binding, binding.geometry.unit_normals)
    velocity = np.broadcast_to(velocity, (n_vertex, eq.n_dim))
    ghost = eq.primitive_from_pt(np.full(n_vertex, pressure), np.full(n_vertex, temperature), velocity)
    return _weak_flux(context, binding, ghost)


def outlet(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    ghost = static_pressure_ghost(context.equations, _interior(context, binding),
                                  binding.geometry.unit_normals,
                                  binding.marker.parameter("pressure", time=context.time))
    return _weak_flux(context, binding, ghost)


def extrapolation(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """Zero-gradient exterior state: supersonic outlets and Neumann markers."""
    return _weak_flux(context, binding, _interior(context, binding))


# Paired markers

def paired_flux(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """
    Flux between each vertex and its matched donor point.

    Both sides of a pair evaluate the same flux, oriented from the point
    with the lower global index through the averaged normal ½(n_i - n_k),
    and apply it with opposite signs, so the pair conserves exactly.
    """
    mesh, store = context.mesh, context.store
    geometry = binding.geometry
    vertices, donors = geometry.vertices, geometry.donors
    first = mesh.global_index[vertices] < mesh.global_index[donors]

    shared = 0.5 * (geometry.normals - binding.donor_normals)
    normals = np.where(first[:, None], shared, -shared)
    V = store.primitive
    V_first = np.where(first[:, None], V[vertices], V[donors])
    V_second = np.where(first[:, None], V[donors], V[vertices])

    result = context.assembler.convective.compute(V_first, V_second, normals,
                                                  compute_jacobian=context.implicit)
    sign = np.where(first, 1.0, -1.0)[:, None]
    flux = sign * result.flux
    np.add.at(store.residual, vertices, flux)

    if context.implicit:
        flag = first[:, None, None]
        jac_self = np.where(flag, result.jacobian_left, -result.jacobian_right)
        jac_donor = np.where(flag, result.jacobian_right, -result.jacobian_left)
        context.system.add_diagonal_blocks(vertices, jac_self)
        context.system.add_blocks(vertices, donors, jac_donor)
    return flux


def actuator_disk(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """
    Pressure jump Δp across a zero-thickness disk.

    The exterior state of a vertex is its donor's state on the other side
    of the disk with the jump removed (upstream face) or added (downstream
    face).
    """
    eq = context.equations
    jump = binding.marker.parameter("pressure_jump", time=context.time)
    if binding.kind == BoundaryKind.ACTUATOR_DISK_INLET:
        jump = -jump
    ghost = context.store.primitive[binding.geometry.donors].copy()
    ghost[:, eq.pressure_index] = np.maximum(ghost[:, eq.pressure_index] + jump, eq.pressure_floor)
    return _weak_flux(context, binding, ghost)


# Engines and turbomachinery

def engine_inflow(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """Fan face: static pressure that yields the target Mach number at the interior total pressure."""
    eq = context.equations
    V_interior = _interior(context, binding)
    target_mach = binding.marker.parameter("target_mach", time=context.time)
    total_pressure = eq.gas.total_pressure(V_interior[:, eq.pressure_index], eq.mach_number(V_interior))
    pressure = total_pressure / (1.0 + 0.5 * eq.gas.gamma_minus_1 * target_mach**2) ** (eq.gamma / eq.gas.gamma_minus_1)
    return _weak_flux(context, binding,
                      static_pressure_ghost(eq, V_interior, binding.geometry.unit_normals, pressure))


def engine_exhaust(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    return inlet_total(context, binding)


def mixing_plane(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """
    Uniform exterior state equal to the mixed-out average of the donor marker.

    The donor profile is read from the current primitive state, so every
    vertex of this marker sees the same, up-to-date averaged state.
    """
    if context.averager is None:
        raise ConfigurationError(f"Marker '{binding.name}': mixing plane needs a mixed-out averager")
    donor = binding.donor_geometry
    owned = donor.vertices < context.mesh.n_owned
    state = context.averager.average(context.store.primitive[donor.vertices[owned]], donor.normals[owned],
                                     binding.marker.donor)
    context.mixed_out[binding.name] = state
    ghost = np.broadcast_to(state.primitive(), (binding.geometry.n_vertices, context.equations.n_prim)).copy()
    return _weak_flux(context, binding, ghost)


# Prescribed values

def custom(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """Exterior state taken from the marker's value table or callable."""
    geometry = binding.geometry
    ghost = binding.marker.prescribed(context.mesh.coordinates[geometry.vertices], context.time)
    if ghost.shape != (geometry.n_vertices, context.equations.n_prim):
        raise ConfigurationError(
            f"Marker '{binding.name}': custom values have shape {ghost.shape}, "
            f"expected {(geometry.n_vertices, context.equations.n_prim)}"
        )
    return _weak_flux(context, binding, ghost)


def dirichlet(context: BoundaryContext, binding: MarkerBinding) -> np.ndarray:
    """Strongly imposed primitive state."""
    eq = context.equations
    store = context.store
    geometry = binding.geometry
    marker = binding.marker
    if marker.values is None:
        values = np.full((geometry.n_vertices, 1), marker.parameter("value", time=context.time))
    else:
        values = marker.prescribed(context.mesh.coordinates[geometry.vertices], context.time)
    if values.shape != (geometry.n_vertices, eq.n_prim):
        raise ConfigurationError(
            f"Marker '{binding.name}': Dirichlet values have shape {values.shape}, "
            f"expected {(geometry.n_vertices, eq.n_prim)}"
        )

    store.primitive[geometry.vertices] = values
    store.solution[geometry.vertices] = eq.to_conservative(values)
    _freeze_rows(store, geometry.vertices)
    if context.implicit:
        context.system.set_identity_rows(geometry.vertices)
    return np.zeros((geometry.n_vertices, eq.n_var))


DEFAULT_HANDLERS: Dict[BoundaryKind, object] = {
    BoundaryKind.EULER_WALL: euler_wall,
    BoundaryKind.SYMMETRY: euler_wall,
    BoundaryKind.HEATFLUX_WALL: heatflux_wall,
    BoundaryKind.ISOTHERMAL_WALL: isothermal_wall,
    BoundaryKind.FAR_FIELD: far_field,
    BoundaryKind.RIEMANN: riemann,
    BoundaryKind.INLET_TOTAL: inlet_total,
    BoundaryKind.INLET_MASS_FLOW: inlet_mass_flow,
    BoundaryKind.SUPERSONIC_INLET: supersonic_inlet,
    BoundaryKind.OUTLET: outlet,
    BoundaryKind.SUPERSONIC_OUTLET: extrapolation,
    BoundaryKind.PERIODIC: paired_flux,
    BoundaryKind.INTERFACE: paired_flux,
    BoundaryKind.NEARFIELD: paired_flux,
    BoundaryKind.ACTUATOR_DISK_INLET: actuator_disk,
    BoundaryKind.ACTUATOR_DISK_OUTLET: actuator_disk,
    BoundaryKind.ENGINE_INFLOW: engine_inflow,
    BoundaryKind.ENGINE_EXHAUST: engine_exhaust,
    BoundaryKind.MIXING_PLANE: mixing_plane,
    BoundaryKind.CUSTOM: custom,
    BoundaryKind.DIRICHLET: dirichlet,
    BoundaryKind.NEUMANN: extrapolation,
}
