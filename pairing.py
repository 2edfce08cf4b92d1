"""
Reference optimal-ate pairing for BLS12-381.

Fp12 elements are 12-tuples of ints: coefficients of 1, w, ..., w^11 with
w^12 = 2w^6 - 2.  Fp2 embeds as u = w^6 - 1, and the G2 twist maps
(x, y) -> (x / w^2, y / w^3).  G2 point arithmetic stays in Fp2; only the
line values are lifted into Fp12.
"""

from __future__ import annotations

from fields import P, R, BLS_X, FP2, affine_add, affine_double

FP12_ONE = (1,) + (0,) * 11

LOG_ATE_LOOP_COUNT = BLS_X.bit_length() - 2
FINAL_EXPONENT = (P ** 12 - 1) // R


def f12_mul(a, b):
    out = [0] * 23
    for i, x in enumerate(a):
        if x:
            for j, y in enumerate(b):
                if y:
                    out[i + j] += x * y
    for k in range(22, 11, -1):
        top = out[k]
        if top:
            out[k - 6] += 2 * top
            out[k - 12] -= 2 * top
    return tuple(c % P for c in out[:12])


def f12_sub(a, b):
    return tuple((x - y) % P for x, y in zip(a, b))


def f12_pow(a, e: int):
    out = FP12_ONE
    while e:
        if e & 1:
            out = f12_mul(out, a)
        a = f12_mul(a, a)
        e >>= 1
    return out


def _scalar12(x: int):
    return (x % P,) + (0,) * 11


def _embed2(a):
    """Fp2 element a0 + a1*u as an Fp12 element."""
    c = [0] * 12
    c[0] = (a[0] - a[1]) % P
    c[6] = a[1] % P
    return tuple(c)


# w^-1 = w^5 - w^11 / 2
_INV2 = pow(2, P - 2, P)
W_INV = tuple((1 if i == 5 else (-_INV2) % P if i == 11 else 0) for i in range(12))
W_INV2 = f12_mul(W_INV, W_INV)
W_INV3 = f12_mul(W_INV2, W_INV)


def _line(t, s, pt):
    """Line through twisted t, s evaluated at the G1 point pt."""
    xp, yp = _scalar12(pt[0]), _scalar12(pt[1])
    (xt, yt), (xs, ys) = t, s
    xt12 = f12_mul(_embed2(xt), W_INV2)
    if xt != xs:
        m = FP2.mul(FP2.sub(ys, yt), FP2.inv(FP2.sub(xs, xt)))
    elif yt == ys:
        xx = FP2.mul(xt, xt)
        m = FP2.mul(FP2.add(FP2.add(xx, xx), xx), FP2.inv(FP2.add(yt, yt)))
    else:
        return f12_sub(xp, xt12)
    yt12 = f12_mul(_embed2(yt), W_INV3)
    m12 = f12_mul(_embed2(m), W_INV)
    return f12_sub(f12_mul(m12, f12_sub(xp, xt12)), f12_sub(yp, yt12))


def miller_loop(q, pt):
    if q is None or pt is None:
        return FP12_ONE
    r = q
    f = FP12_ONE
    for i in range(LOG_ATE_LOOP_COUNT, -1, -1):
        f = f12_mul(f12_mul(f, f), _line(r, r, pt))
        r = affine_double(FP2, r)
        if BLS_X & (1 << i):
            f = f12_mul(f, _line(r, q, pt))
            r = affine_add(FP2, r, q)
    return f


def final_exponentiate(f):
    return f12_pow(f, FINAL_EXPONENT)


def pairing(q, pt):
    """e(pt, q) for G2 affine q and G1 affine pt (None = infinity)."""
    return final_exponentiate(miller_loop(q, pt))
