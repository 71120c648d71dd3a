import warp as wp


@wp.func
def luminance(v: wp.vec3f) -> float:
    return 0.212671 * v[0] + 0.715160 * v[1] + 0.072169 * v[2]


@wp.func
def modulo(a: float, b: float) -> float:
    r = a - b * wp.floor(a / b)
    if r >= b:
        r = r - b
    return r


@wp.func
def coordinate_system(n: wp.vec3f):
    # Duff et al. 2017, branchless orthonormal basis
    sign = 1.0
    if n[2] < 0.0:
        sign = -1.0
    a = -1.0 / (sign + n[2])
    b = n[0] * n[1] * a
    x = wp.vec3f(1.0 + sign * n[0] * n[0] * a, sign * b, -sign * n[0])
    y = wp.vec3f(b, sign + n[1] * n[1] * a, -n[1])
    return x, y


@wp.func
def frame_to_matrix(x: wp.vec3f, y: wp.vec3f, n: wp.vec3f) -> wp.mat33f:
    # Rows are the frame axes, so m * v maps world vectors to the local frame
    return wp.mat33f(
        x[0], x[1], x[2],
        y[0], y[1], y[2],
        n[0], n[1], n[2],
    )


@wp.func
def aabb_corner(p_min: wp.vec3f, p_max: wp.vec3f, i: int) -> wp.vec3f:
    c = p_min
    if (i & 1) != 0:
        c = wp.vec3f(p_max[0], c[1], c[2])
    if (i & 2) != 0:
        c = wp.vec3f(c[0], p_max[1], c[2])
    if (i & 4) != 0:
        c = wp.vec3f(c[0], c[1], p_max[2])
    return c


@wp.func
def bounding_sphere(p_min: wp.vec3f, p_max: wp.vec3f):
    center = 0.5 * (p_min + p_max)
    radius = wp.length(p_max - center)
    return center, radius


@wp.func
def sphere_aabb_intersect(
    center: wp.vec3f, radius: float, p_min: wp.vec3f, p_max: wp.vec3f
) -> bool:
    # Arvo's squared distance from the sphere center to the box
    dist_sq = float(0.0)
    for i in range(3):
        if center[i] < p_min[i]:
            dist_sq += (p_min[i] - center[i]) * (p_min[i] - center[i])
        elif center[i] > p_max[i]:
            dist_sq += (center[i] - p_max[i]) * (center[i] - p_max[i])
    return dist_sq <= radius * radius


@wp.func
def sample_cdf(cdf: wp.array(dtype=wp.float32), num: int, u: float) -> int:
    # Index of the last entry <= u, i.e. upper_bound(u) - 1 clamped into range
    lo = int(0)
    hi = int(num)
    while lo < hi:
        mid = (lo + hi) // 2
        if cdf[mid] <= u:
            lo = mid + 1
        else:
            hi = mid
    return wp.clamp(lo - 1, 0, num - 1)


@wp.func
def intersect_jacobian(
    org: wp.vec3f,
    dir: wp.vec3f,
    p: wp.vec3f,
    n: wp.vec3f,
    l: wp.vec3f,
) -> wp.vec3f:
    """Derivative of a ray-plane intersection w.r.t. the line parameter of
    the ray direction, dir(t) = dir + t * l.

    The plane passes through p with normal n.
    """
    dir_dot_n = wp.dot(dir, n)
    if wp.abs(dir_dot_n) < 1e-10:
        return wp.vec3f(0.0, 0.0, 0.0)
    d = -wp.dot(p, n)
    t = -(wp.dot(org, n) + d) / dir_dot_n
    if t <= 0.0:
        return wp.vec3f(0.0, 0.0, 0.0)
    return t * (l - dir * (wp.dot(l, n) / dir_dot_n))


@wp.func
def solve_cubic(c0: float, c1: float, c2: float, c3: float) -> wp.vec3f:
    # Blinn's method, see http://momentsingraphics.de/?p=105
    # Returns the three real roots with the middle root in the y component.
    inv_c3 = 1.0 / c3
    c0 = c0 * inv_c3
    c1 = c1 * inv_c3
    c2 = c2 * inv_c3
    c1 = c1 / 3.0
    c2 = c2 / 3.0

    A = c3
    B = c2
    C = c1
    D = c0

    # Hessian and discriminant
    delta = wp.vec3f(-c2 * c2 + c1, -c1 * c2 + c0, c2 * c0 - c1 * c1)
    discriminant = 4.0 * delta[0] * delta[2] - delta[1] * delta[1]
    sqrt_disc = wp.sqrt(wp.max(discriminant, 0.0))

    # Algorithm A
    C_a = delta[0]
    D_a = -2.0 * B * delta[0] + delta[1]
    theta_a = wp.atan2(sqrt_disc, -D_a) / 3.0
    x_1a = 2.0 * wp.sqrt(wp.max(-C_a, 0.0)) * wp.cos(theta_a)
    x_3a = 2.0 * wp.sqrt(wp.max(-C_a, 0.0)) * wp.cos(theta_a + (2.0 / 3.0) * wp.pi)
    xl = x_3a
    if (x_1a + x_3a) > 2.0 * B:
        xl = x_1a
    xlc = wp.vec2f(xl - B, A)

    # Algorithm D
    C_d = delta[2]
    D_d = -D * delta[1] + 2.0 * C * delta[2]
    theta_d = wp.atan2(D * sqrt_disc, -D_d) / 3.0
    x_1d = 2.0 * wp.sqrt(wp.max(-C_d, 0.0)) * wp.cos(theta_d)
    x_3d = 2.0 * wp.sqrt(wp.max(-C_d, 0.0)) * wp.cos(theta_d + (2.0 / 3.0) * wp.pi)
    xs = x_3d
    if x_1d + x_3d < 2.0 * C:
        xs = x_1d
    xsc = wp.vec2f(-D, xs + C)

    E = xlc[1] * xsc[1]
    F = -xlc[0] * xsc[1] - xlc[1] * xsc[0]
    G = xlc[0] * xsc[0]
    xmc = wp.vec2f(C * F - B * G, -B * F + C * E)

    root = wp.vec3f(xsc[0] / xsc[1], xmc[0] / xmc[1], xlc[0] / xlc[1])
    if root[0] < root[1] and root[0] < root[2]:
        root = wp.vec3f(root[1], root[0], root[2])
    elif root[2] < root[0] and root[2] < root[1]:
        root = wp.vec3f(root[0], root[2], root[1])
    return root
