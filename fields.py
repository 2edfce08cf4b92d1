"""
BLS12-381 Field & Curve Reference
==================================
Plain-integer arithmetic for the base field Fp, its quadratic extension
Fp2 = Fp[u]/(u^2 + 1), and affine / Jacobian point helpers for

    G1:  y^2 = x^3 + 4              over Fp
    G2:  y^2 = x^3 + 4(u + 1)       over Fp2

The coprocessor's datapath never calls into this module for its own
results; everything here is the golden model used by the fixed-function
units' constants, the pairing evaluator and the test-suite.

Elements are plain ``int`` (Fp) or ``(c0, c1)`` tuples (Fp2).  Points are
``(x, y)`` affine tuples or ``None`` for the point at infinity; Jacobian
points are ``(X, Y, Z)`` with Z = 0 for the identity.
"""

from __future__ import annotations
from typing import Optional

# ---------------------------------------------------------------------------
#  Curve constants
# ---------------------------------------------------------------------------

P = 0x1A0111EA397FE69A4B1BA7B6434BACD764774B84F38512BF6730D2A0F6B0F6241EABFFFEB153FFFFB9FEFFFFFFFFAAAB
R = 0x73EDA753299D7D483339D80809A1D80553BDA402FFFE5BFEFFFFFFFF00000001

# |x| for the BLS parameter x = -0xd201000000010000
BLS_X = 0xD201000000010000

B1 = 4
B2 = (4, 4)

G1 = (
    0x17F1D3A73197D7942695638C4FA9AC0FC3688C4F9774B905A14E3A3F171BAC586C55E83FF97A1AEFFB3AF00ADB22C6BB,
    0x08B3F481E3AAA0F1A09E30ED741D8AE4FCF5E095D5D00AF600DB18CB2C04B3EDD03CC744A2888AE40CAA232946C5E7E1,
)

G2 = (
    (0x024AA2B2F08F0A91260805272DC51051C6E47AD4FA403B02B4510B647AE3D1770BAC0326A805BBEFD48056C8C121BDB8,
     0x13E02B6052719F607DACD3A088274F65596BD0D09920B61AB5DA61BBDC7F5049334CF11213945D57E5AC7D055D042B7E),
    (0x0CE5D527727D6E118CC9CDC6DA2E351AADFD9BAA8CBDD3A76D429A695160D12C923AC9CC3BACA289E193548608B82801,
     0x0606C4A02EA734CC32ACD2B02BC28B99CB3E287E85A763AF267492AB572E99AB3F370D275CEC1DA1AAA9075FF05F79BE),
)


# ---------------------------------------------------------------------------
#  Field arithmetic
# ---------------------------------------------------------------------------

class Fp:
    """Arithmetic in GF(p) on plain ints."""

    ext = False
    zero = 0
    one = 1

    def __init__(self, p: int = P):
        self.p = p

    def add(self, a, b):
        return (a + b) % self.p

    def sub(self, a, b):
        return (a - b) % self.p

    def mul(self, a, b):
        return (a * b) % self.p

    def neg(self, a):
        return (-a) % self.p

    def inv(self, a):
        # Fermat; 0 maps to 0 like the hardware inverter
        return pow(a, self.p - 2, self.p)

    def is_zero(self, a) -> bool:
        return a % self.p == 0


class Fp2(Fp):
    """Arithmetic in GF(p^2) with u^2 = -1, elements as (c0, c1)."""

    ext = True
    zero = (0, 0)
    one = (1, 0)

    def add(self, a, b):
        p = self.p
        return ((a[0] + b[0]) % p, (a[1] + b[1]) % p)

    def sub(self, a, b):
        p = self.p
        return ((a[0] - b[0]) % p, (a[1] - b[1]) % p)

    def mul(self, a, b):
        """Schoolbook product (a0*b0 - a1*b1, a0*b1 + a1*b0)."""
        p = self.p
        return ((a[0] * b[0] - a[1] * b[1]) % p,
                (a[0] * b[1] + a[1] * b[0]) % p)

    def neg(self, a):
        p = self.p
        return ((-a[0]) % p, (-a[1]) % p)

    def inv(self, a):
        p = self.p
        norm = (a[0] * a[0] + a[1] * a[1]) % p
        inv_norm = pow(norm, p - 2, p)
        return ((a[0] * inv_norm) % p, (-a[1] * inv_norm) % p)

    def is_zero(self, a) -> bool:
        return a[0] % self.p == 0 and a[1] % self.p == 0


FP = Fp()
FP2 = Fp2()


def field_for(ext: bool, p: int = P) -> Fp:
    """Return the Fp or Fp2 helper for the given modulus."""
    return Fp2(p) if ext else Fp(p)


# ---------------------------------------------------------------------------
#  Affine points
# ---------------------------------------------------------------------------

def is_on_curve(F: Fp, pt, b) -> bool:
    if pt is None:
        return True
    x, y = pt
    return F.sub(F.mul(y, y), F.mul(F.mul(x, x), x)) == b


def affine_neg(F: Fp, pt):
    if pt is None:
        return None
    return (pt[0], F.neg(pt[1]))


def affine_double(F: Fp, pt):
    if pt is None or F.is_zero(pt[1]):
        return None
    x, y = pt
    xx = F.mul(x, x)
    m = F.mul(F.add(F.add(xx, xx), xx), F.inv(F.add(y, y)))
    nx = F.sub(F.mul(m, m), F.add(x, x))
    ny = F.sub(F.mul(m, F.sub(x, nx)), y)
    return (nx, ny)


def affine_add(F: Fp, p1, p2):
    if p1 is None:
        return p2
    if p2 is None:
        return p1
    (x1, y1), (x2, y2) = p1, p2
    if x1 == x2:
        if y1 == y2:
            return affine_double(F, p1)
        return None
    m = F.mul(F.sub(y2, y1), F.inv(F.sub(x2, x1)))
    nx = F.sub(F.sub(F.mul(m, m), x1), x2)
    ny = F.sub(F.mul(m, F.sub(x1, nx)), y1)
    return (nx, ny)


def affine_mul(F: Fp, pt, k: int):
    """Double-and-add scalar multiplication."""
    if k < 0:
        return affine_mul(F, affine_neg(F, pt), -k)
    out = None
    acc = pt
    while k:
        if k & 1:
            out = affine_add(F, out, acc)
        acc = affine_double(F, acc)
        k >>= 1
    return out


# ---------------------------------------------------------------------------
#  Jacobian conversion
# ---------------------------------------------------------------------------

def jacobian_identity(F: Fp):
    return (F.one, F.one, F.zero)


def to_jacobian(F: Fp, pt):
    if pt is None:
        return jacobian_identity(F)
    return (pt[0], pt[1], F.one)


def to_affine(F: Fp, jac) -> Optional[tuple]:
    x, y, z = jac
    if F.is_zero(z):
        return None
    zi = F.inv(z)
    zi2 = F.mul(zi, zi)
    return (F.mul(x, zi2), F.mul(y, F.mul(zi2, zi)))
