"""
nbody_direct.cuda_kernels
CUDA C templates for the tiled device evaluator and the position update.

Launch geometry for the evaluators: grid ``(slice / TPB, nsrcblocks)``,
block ``(TPB,)``. Block row ``blockIdx.y`` owns source chunk
``[y*jcount, (y+1)*jcount)`` with ``jcount = nSrc / gridDim.y``; the chunk
is staged through shared memory one TPB-wide tile at a time. Several rows
write the same target, so partial sums land with ``atomicAdd``.

Target ``i`` of a device slice reads its coordinates from the device's own
source replica at ``tOffset + i`` and writes output ``i``.

Placeholders: ``{T}`` scalar type, ``{RSQRT}`` reciprocal square root,
``{TPB}`` threads per block, ``{NORM}`` geometric constant literal.
"""

# ============================================================================
# 3D GRAVITY
# ============================================================================

_GRAV3D_TEMPLATE = r'''
#define TPB {TPB}

extern "C" __global__ void __launch_bounds__(TPB)
ngrav_3d_tiled(
    const int nSrc,
    const {T}* __restrict__ sx,
    const {T}* __restrict__ sy,
    const {T}* __restrict__ sz,
    const {T}* __restrict__ ss,
    const {T}* __restrict__ sr,
    const int tOffset,
    {T}* __restrict__ tu,
    {T}* __restrict__ tv,
    {T}* __restrict__ tw
) {{
    __shared__ {T} s_sx[TPB];
    __shared__ {T} s_sy[TPB];
    __shared__ {T} s_sz[TPB];
    __shared__ {T} s_ss[TPB];
    __shared__ {T} s_sr[TPB];

    const int i = blockIdx.x * blockDim.x + threadIdx.x;
    const int it = tOffset + i;
    const {T} tx = sx[it];
    const {T} ty = sy[it];
    const {T} tz = sz[it];
    const {T} tr2 = sr[it] * sr[it];

    const int jcount = nSrc / gridDim.y;
    const int jstart = blockIdx.y * jcount;

    {T} locu = 0.0;
    {T} locv = 0.0;
    {T} locw = 0.0;

    for (int b = 0; b < jcount / TPB; ++b) {{
        const int j = jstart + b * TPB + threadIdx.x;
        s_sx[threadIdx.x] = sx[j];
        s_sy[threadIdx.x] = sy[j];
        s_sz[threadIdx.x] = sz[j];
        s_ss[threadIdx.x] = ss[j];
        s_sr[threadIdx.x] = sr[j];
        __syncthreads();

        for (int k = 0; k < TPB; ++k) {{
            const {T} dx = s_sx[k] - tx;
            const {T} dy = s_sy[k] - ty;
            const {T} dz = s_sz[k] - tz;
            const {T} distsq = dx*dx + dy*dy + dz*dz + s_sr[k]*s_sr[k] + tr2;
            const {T} factor = s_ss[k] * {RSQRT}(distsq) / distsq;
            locu += dx * factor;
            locv += dy * factor;
            locw += dz * factor;
        }}
        __syncthreads();
    }}

    atomicAdd(&tu[i], locu / ({T})({NORM}));
    atomicAdd(&tv[i], locv / ({T})({NORM}));
    atomicAdd(&tw[i], locw / ({T})({NORM}));
}}
'''

_GRAV3D_KAHAN_TEMPLATE = r'''
#define TPB {TPB}

__device__ __forceinline__ void kahan_add({T}& sum, {T}& rem, const {T} x) {{
    const {T} y = x - rem;
    const {T} t = sum + y;
    rem = (t - sum) - y;
    sum = t;
}}

extern "C" __global__ void __launch_bounds__(TPB)
ngrav_3d_tiled_kahan(
    const int nSrc,
    const {T}* __restrict__ sx,
    const {T}* __restrict__ sy,
    const {T}* __restrict__ sz,
    const {T}* __restrict__ ss,
    const {T}* __restrict__ sr,
    const int tOffset,
    {T}* __restrict__ tu,
    {T}* __restrict__ tv,
    {T}* __restrict__ tw
) {{
    __shared__ {T} s_sx[TPB];
    __shared__ {T} s_sy[TPB];
    __shared__ {T} s_sz[TPB];
    __shared__ {T} s_ss[TPB];
    __shared__ {T} s_sr[TPB];

    const int i = blockIdx.x * blockDim.x + threadIdx.x;
    const int it = tOffset + i;
    const {T} tx = sx[it];
    const {T} ty = sy[it];
    const {T} tz = sz[it];
    const {T} tr2 = sr[it] * sr[it];

    const int jcount = nSrc / gridDim.y;
    const int jstart = blockIdx.y * jcount;

    {T} locu = 0.0, remu = 0.0;
    {T} locv = 0.0, remv = 0.0;
    {T} locw = 0.0, remw = 0.0;

    for (int b = 0; b < jcount / TPB; ++b) {{
        const int j = jstart + b * TPB + threadIdx.x;
        s_sx[threadIdx.x] = sx[j];
        s_sy[threadIdx.x] = sy[j];
        s_sz[threadIdx.x] = sz[j];
        s_ss[threadIdx.x] = ss[j];
        s_sr[threadIdx.x] = sr[j];
        __syncthreads();

        for (int k = 0; k < TPB; ++k) {{
            const {T} dx = s_sx[k] - tx;
            const {T} dy = s_sy[k] - ty;
            const {T} dz = s_sz[k] - tz;
            const {T} distsq = dx*dx + dy*dy + dz*dz + s_sr[k]*s_sr[k] + tr2;
            const {T} factor = s_ss[k] * {RSQRT}(distsq) / distsq;
            kahan_add(locu, remu, dx * factor);
            kahan_add(locv, remv, dy * factor);
            kahan_add(locw, remw, dz * factor);
        }}
        __syncthreads();
    }}

    atomicAdd(&tu[i], (locu + remu) / ({T})({NORM}));
    atomicAdd(&tv[i], (locv + remv) / ({T})({NORM}));
    atomicAdd(&tw[i], (locw + remw) / ({T})({NORM}));
}}
'''

# ============================================================================
# 2D VORTEX
# ============================================================================

_VORT2D_TEMPLATE = r'''
#define TPB {TPB}

extern "C" __global__ void __launch_bounds__(TPB)
nvort_2d_tiled(
    const int nSrc,
    const {T}* __restrict__ sx,
    const {T}* __restrict__ sy,
    const {T}* __restrict__ ss,
    const {T}* __restrict__ sr,
    const int tOffset,
    {T}* __restrict__ tu,
    {T}* __restrict__ tv
) {{
    __shared__ {T} s_sx[TPB];
    __shared__ {T} s_sy[TPB];
    __shared__ {T} s_ss[TPB];
    __shared__ {T} s_sr[TPB];

    const int i = blockIdx.x * blockDim.x + threadIdx.x;
    const int it = tOffset + i;
    const {T} tx = sx[it];
    const {T} ty = sy[it];
    const {T} tr2 = sr[it] * sr[it];

    const int jcount = nSrc / gridDim.y;
    const int jstart = blockIdx.y * jcount;

    {T} locu = 0.0;
    {T} locv = 0.0;

    for (int b = 0; b < jcount / TPB; ++b) {{
        const int j = jstart + b * TPB + threadIdx.x;
        s_sx[threadIdx.x] = sx[j];
        s_sy[threadIdx.x] = sy[j];
        s_ss[threadIdx.x] = ss[j];
        s_sr[threadIdx.x] = sr[j];
        __syncthreads();

        for (int k = 0; k < TPB; ++k) {{
            const {T} dx = s_sx[k] - tx;
            const {T} dy = s_sy[k] - ty;
            const {T} distsq = dx*dx + dy*dy + s_sr[k]*s_sr[k] + tr2;
            const {T} factor = s_ss[k] / distsq;
            locu += dy * factor;
            locv -= dx * factor;
        }}
        __syncthreads();
    }}

    atomicAdd(&tu[i], locu / ({T})({NORM}));
    atomicAdd(&tv[i], locv / ({T})({NORM}));
}}
'''

_VORT2D_KAHAN_TEMPLATE = r'''
#define TPB {TPB}

__device__ __forceinline__ void kahan_add({T}& sum, {T}& rem, const {T} x) {{
    const {T} y = x - rem;
    const {T} t = sum + y;
    rem = (t - sum) - y;
    sum = t;
}}

extern "C" __global__ void __launch_bounds__(TPB)
nvort_2d_tiled_kahan(
    const int nSrc,
    const {T}* __restrict__ sx,
    const {T}* __restrict__ sy,
    const {T}* __restrict__ ss,
    const {T}* __restrict__ sr,
    const int tOffset,
    {T}* __restrict__ tu,
    {T}* __restrict__ tv
) {{
    __shared__ {T} s_sx[TPB];
    __shared__ {T} s_sy[TPB];
    __shared__ {T} s_ss[TPB];
    __shared__ {T} s_sr[TPB];

    const int i = blockIdx.x * blockDim.x + threadIdx.x;
    const int it = tOffset + i;
    const {T} tx = sx[it];
    const {T} ty = sy[it];
    const {T} tr2 = sr[it] * sr[it];

    const int jcount = nSrc / gridDim.y;
    const int jstart = blockIdx.y * jcount;

    {T} locu = 0.0, remu = 0.0;
    {T} locv = 0.0, remv = 0.0;

    for (int b = 0; b < jcount / TPB; ++b) {{
        const int j = jstart + b * TPB + threadIdx.x;
        s_sx[threadIdx.x] = sx[j];
        s_sy[threadIdx.x] = sy[j];
        s_ss[threadIdx.x] = ss[j];
        s_sr[threadIdx.x] = sr[j];
        __syncthreads();

        for (int k = 0; k < TPB; ++k) {{
            const {T} dx = s_sx[k] - tx;
            const {T} dy = s_sy[k] - ty;
            const {T} distsq = dx*dx + dy*dy + s_sr[k]*s_sr[k] + tr2;
            const {T} factor = s_ss[k] / distsq;
            kahan_add(locu, remu, dy * factor);
            kahan_add(locv, remv, -dx * factor);
        }}
        __syncthreads();
    }}

    atomicAdd(&tu[i], (locu + remu) / ({T})({NORM}));
    atomicAdd(&tv[i], (locv + remv) / ({T})({NORM}));
}}
'''

# ============================================================================
# EXPLICIT POSITION UPDATE (time stepping)
# ============================================================================

_POSUPDATE_3D_TEMPLATE = r'''
extern "C" __global__ void
posupdate_3d(
    const int nTarg,
    const {T} dt,
    const int tOffset,
    {T}* __restrict__ x,
    {T}* __restrict__ y,
    {T}* __restrict__ z,
    const {T}* __restrict__ u,
    const {T}* __restrict__ v,
    const {T}* __restrict__ w
) {{
    const int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i < nTarg) {{
        x[tOffset + i] += dt * u[i];
        y[tOffset + i] += dt * v[i];
        z[tOffset + i] += dt * w[i];
    }}
}}
'''

_POSUPDATE_2D_TEMPLATE = r'''
extern "C" __global__ void
posupdate_2d(
    const int nTarg,
    const {T} dt,
    const int tOffset,
    {T}* __restrict__ x,
    {T}* __restrict__ y,
    const {T}* __restrict__ u,
    const {T}* __restrict__ v
) {{
    const int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i < nTarg) {{
        x[tOffset + i] += dt * u[i];
        y[tOffset + i] += dt * v[i];
    }}
}}
'''

# (kernel, compensated) -> (template, entry point)
KERNEL_TEMPLATES = {
    ('gravity3d', False): (_GRAV3D_TEMPLATE, 'ngrav_3d_tiled'),
    ('gravity3d', True): (_GRAV3D_KAHAN_TEMPLATE, 'ngrav_3d_tiled_kahan'),
    ('vortex2d', False): (_VORT2D_TEMPLATE, 'nvort_2d_tiled'),
    ('vortex2d', True): (_VORT2D_KAHAN_TEMPLATE, 'nvort_2d_tiled_kahan'),
}

UPDATE_TEMPLATES = {
    'gravity3d': (_POSUPDATE_3D_TEMPLATE, 'posupdate_3d'),
    'vortex2d': (_POSUPDATE_2D_TEMPLATE, 'posupdate_2d'),
}

__all__ = ['KERNEL_TEMPLATES', 'UPDATE_TEMPLATES']
