"""
Joint camera/projector bundle adjustment.

A single flat parameter vector (see `layout`) is optimized against reprojection
residuals (see `residuals`), optionally with a sparse Jacobian pattern (see `jacobian`).
"""
