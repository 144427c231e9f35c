# kernels.py
# Node-parallel kernels over scenario-tree arrays. Per-node data is laid out
# node-major: row i of an (N, dim) array belongs to tree node i.
import numpy as np
from numba import njit, prange


# ---------- preconditioning ----------
@njit(cache=True, parallel=True)
def k_diagonal_precondition(mats, vecs, precond):
    # mats (N, r, c) rows scaled; vecs (V, N, r) scaled alike
    n = mats.shape[0]
    r = mats.shape[1]
    c = mats.shape[2]
    nv = vecs.shape[0]
    for i in prange(n):
        for a in range(r):
            d = precond[a]
            for b in range(c):
                mats[i, a, b] *= d
            for v in range(nv):
                vecs[v, i, a] *= d


# ---------- tree kernels ----------
@njit(cache=True, parallel=True)
def k_extrapolation_delta(cur, prev, ancestor, root_ref, out):
    n = cur.shape[0]
    dim = cur.shape[1]
    for i in prange(n):
        a = ancestor[i]
        if a < 0:
            for j in range(dim):
                out[i, j] = cur[i, j] - root_ref[j]
        else:
            for j in range(dim):
                out[i, j] = cur[i, j] - prev[a, j]


@njit(cache=True, parallel=True)
def k_redistribute_to_children(delta, weight, child_offset, num_children, out, start, count):
    dim = delta.shape[1]
    for t in prange(count):
        node = start + t
        nc = num_children[node]
        if nc > 0:
            first = child_offset[node]
            tot = 0.0
            for c in range(first, first + nc):
                tot += weight[c]
            for c in range(first, first + nc):
                share = weight[c] / tot if tot > 0.0 else 1.0 / nc
                for j in range(dim):
                    out[c, j] = delta[node, j] * share


@njit(cache=True, parallel=True)
def k_propagate_ancestor_update(src, dst, ancestor, start, count):
    dim = src.shape[1]
    for t in prange(count):
        i = start + t
        a = ancestor[i]
        for j in range(dim):
            dst[i, j] = src[a, j]


@njit(cache=True, parallel=True, fastmath=True)
def k_reduce_children_to_parent(src, dst, num_children, child_offset, start, count):
    dim = src.shape[1]
    for t in prange(count):
        node = start + t
        nc = num_children[node]
        first = child_offset[node]
        for j in range(dim):
            acc = 0.0
            for c in range(first, first + nc):
                acc += src[c, j]
            dst[node, j] += acc


# ---------- BLAS-like ----------
@njit(cache=True, parallel=True, fastmath=True)
def k_axpy_with_offset(dst, dst_offset, src, src_offset, scale, count):
    for t in prange(count):
        dst[dst_offset + t] += scale * src[src_offset + t]


@njit(cache=True, parallel=True)
def k_layout_shuffle(dst, src, dim, count, blocks):
    # (blocks, count, dim) -> (blocks, dim, count), flat storage
    stride = count * dim
    for b in prange(blocks):
        base = b * stride
        for i in range(count):
            for j in range(dim):
                dst[base + j * count + i] = src[base + i * dim + j]


@njit(cache=True, parallel=True)
def k_dual_extrapolate(w, y, y_prev, alpha):
    for i in prange(w.size):
        w[i] = y[i] + alpha * (y[i] - y_prev[i])


@njit(cache=True, parallel=True)
def k_dual_ascent_update(y_next, w, hx, z, step):
    for i in prange(y_next.size):
        y_next[i] = w[i] + step * (hx[i] - z[i])


# ---------- projections ----------
@njit(cache=True, parallel=True)
def k_project_box(x, lower, upper, offset, count):
    # clamp columns [offset, offset+count) of x (N, width); bounds are (N, count)
    n = x.shape[0]
    for i in prange(n):
        for j in range(count):
            v = x[i, offset + j]
            lo = lower[i, j]
            hi = upper[i, j]
            if v < lo:
                v = lo
            elif v > hi:
                v = hi
            x[i, offset + j] = v


@njit(cache=True, parallel=True)
def k_project_control_box(u, lower, upper):
    n = u.shape[0]
    m = u.shape[1]
    for i in prange(n):
        for j in range(m):
            v = u[i, j]
            if v < lower[i, j]:
                v = lower[i, j]
            elif v > upper[i, j]:
                v = upper[i, j]
            u[i, j] = v


# =============================================================================
# Python-side entry points (shape checks, then a single kernel launch)
# =============================================================================
def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ValueError(msg)


def diagonal_precondition(mats: np.ndarray, vecs: np.ndarray, precond: np.ndarray) -> None:
    _require(mats.ndim == 3, "mats must be (N, rows, cols)")
    _require(vecs.ndim == 3 and vecs.shape[1:] == mats.shape[:2],
             f"vecs must be (V, {mats.shape[0]}, {mats.shape[1]}), got {vecs.shape}")
    _require(precond.shape == (mats.shape[1],),
             f"preconditioner has shape {precond.shape}, expected ({mats.shape[1]},)")
    _require(bool(np.all(precond > 0.0)), "preconditioner must be strictly positive")
    k_diagonal_precondition(mats, vecs, precond)


def compute_extrapolation_delta(cur, prev, ancestor, root_ref, out) -> np.ndarray:
    _require(cur.shape == prev.shape == out.shape, "cur/prev/out shapes differ")
    _require(root_ref.shape == (cur.shape[1],), "root_ref must have one entry per dimension")
    _require(not np.shares_memory(out, prev), "out must not alias prev")
    k_extrapolation_delta(cur, prev, ancestor, root_ref, out)
    return out


def redistribute_to_children(delta, weight, child_offset, num_children, out, start=0, count=None):
    if count is None:
        count = delta.shape[0] - start
    _require(delta.shape == out.shape, "delta/out shapes differ")
    k_redistribute_to_children(delta, weight, child_offset, num_children, out, int(start), int(count))
    return out


def propagate_ancestor_update(src, dst, ancestor, start, count):
    _require(src.shape == dst.shape, "src/dst shapes differ")
    k_propagate_ancestor_update(src, dst, ancestor, int(start), int(count))
    return dst


def reduce_children_to_parent(src, dst, num_children, child_offset, start, count):
    _require(src.shape == dst.shape, "src/dst shapes differ")
    k_reduce_children_to_parent(src, dst, num_children, child_offset, int(start), int(count))
    return dst


def axpy_with_offset(dst, dst_offset, src, src_offset, scale, count):
    _require(dst.ndim == 1 and src.ndim == 1, "axpy_with_offset works on flat vectors")
    _require(dst_offset + count <= dst.size and src_offset + count <= src.size,
             "segment out of range")
    k_axpy_with_offset(dst, int(dst_offset), src, int(src_offset), float(scale), int(count))
    return dst


def layout_shuffle(dst, src, dim, count, blocks=1):
    """Node-major (blocks, count, dim) -> dim-major (blocks, dim, count).

    Calling it again with `dim` and `count` swapped undoes the shuffle.
    """
    _require(dst.ndim == 1 and src.ndim == 1, "layout_shuffle works on flat vectors")
    _require(src.size == dst.size == blocks * count * dim, "size mismatch in layout_shuffle")
    _require(not np.shares_memory(dst, src), "layout_shuffle cannot run in place")
    k_layout_shuffle(dst, src, int(dim), int(count), int(blocks))
    return dst


def dual_extrapolate(w, y, y_prev, alpha):
    k_dual_extrapolate(w, y, y_prev, float(alpha))
    return w


def dual_ascent_update(y_next, w, hx, z, step):
    k_dual_ascent_update(y_next, w, hx, z, float(step))
    return y_next


def project_box(x, lower, upper, offset=0, count=None):
    if count is None:
        count = x.shape[1] - offset
    _require(lower.shape == upper.shape == (x.shape[0], count), "bound shape mismatch")
    k_project_box(x, lower, upper, int(offset), int(count))
    return x


def project_control_box(u, lower, upper):
    _require(lower.shape == upper.shape == u.shape, "bound shape mismatch")
    k_project_control_box(u, lower, upper)
    return u
