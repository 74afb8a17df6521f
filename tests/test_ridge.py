import importlib
import unittest
import torch

_ridge = importlib.import_module("difftune.ridge")
Dataset = _ridge.Dataset
split_dataset = _ridge.split_dataset
ridge_problem = _ridge.ridge_problem
fit_ridge = _ridge.fit_ridge
training_loss = _ridge.training_loss
evaluation_loss = _ridge.evaluation_loss
evaluation_residual = _ridge.evaluation_residual
loss_gradient = _ridge.loss_gradient
ridge_sensitivity = _ridge.ridge_sensitivity
regularization_perturbation = _ridge.regularization_perturbation

_core = importlib.import_module("difftune.core")
QPBackend = _core.QPBackend
QPStatus = _core.QPStatus
solve_qp = _core.solve_qp

_exc = importlib.import_module("difftune.exceptions")
DimensionMismatch = _exc.DimensionMismatch
InnerSolveDivergence = _exc.InnerSolveDivergence
SensitivityUnavailable = _exc.SensitivityUnavailable


def make_regression(N=100, D=20, noise=5.0, seed=42):
    g = torch.Generator().manual_seed(seed)
    w_real = 10 * torch.randn(D, generator=g, dtype=torch.float64)
    X = 10 * torch.randn(N, D, generator=g, dtype=torch.float64)
    y = X @ w_real + noise * torch.randn(N, generator=g, dtype=torch.float64)
    return X, y


def closed_form_ridge(X, y, alpha):
    n, d = X.shape
    A = X.T @ X / n + alpha * torch.eye(d, dtype=X.dtype)
    return torch.linalg.solve(A, X.T @ y / n), A


class TestDataset(unittest.TestCase):
    def test_split_is_disjoint_and_ordered(self):
        X, y = make_regression()
        train, evaluation = split_dataset(X, y)
        self.assertEqual(train.n_samples, 50)
        self.assertEqual(evaluation.n_samples, 50)
        self.assertEqual(train.n_features, 20)
        self.assertTrue(torch.equal(train.X, X[:50]))
        self.assertTrue(torch.equal(evaluation.y, y[50:]))

    def test_split_sizes(self):
        X, y = make_regression(N=10, D=3)
        train, evaluation = split_dataset(X, y, n_train=7)
        self.assertEqual((train.n_samples, evaluation.n_samples), (7, 3))
        for bad in (0, 10, 12):
            with self.assertRaises(DimensionMismatch):
                split_dataset(X, y, n_train=bad)

    def test_create_rejects_inconsistent_shapes(self):
        X, y = make_regression(N=10, D=3)
        with self.assertRaises(DimensionMismatch):
            Dataset.create(X, y[:-1])
        with self.assertRaises(DimensionMismatch):
            Dataset.create(X[0], y)
        with self.assertRaises(DimensionMismatch):
            Dataset.create(X, y.unsqueeze(-1))

    def test_create_converts_array_likes(self):
        data = Dataset.create([[1.0, 2.0], [3.0, 4.0]], [1, 2])
        self.assertEqual(data.X.dtype, torch.float64)
        self.assertEqual(data.y.dtype, torch.float64)


class TestInnerSolve(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        torch.set_default_dtype(torch.float64)
        X, y = make_regression()
        cls.train, cls.evaluation = split_dataset(X, y)

    def test_problem_matches_objective(self):
        X, y = self.train
        alpha = 0.3
        problem = ridge_problem(X, y, alpha)
        w = torch.randn(20, generator=torch.Generator().manual_seed(0))
        n, d = X.shape
        objective = ((X @ w - y) ** 2).sum() / (2 * n * d) + alpha * (w @ w) / (2 * d)
        quadratic = w @ problem.Q @ w + problem.m @ w + (y @ y) / (2 * n * d)
        self.assertTrue(torch.allclose(objective, quadratic, rtol=1e-12))
        self.assertTrue(torch.all(torch.isinf(problem.L)))
        self.assertTrue(torch.all(torch.isinf(problem.U)))

    def test_matches_closed_form(self):
        X, y = self.train
        for alpha in (0.0, 0.1, 2.5):
            fit = fit_ridge(QPBackend(), X, y, alpha)
            expected, _ = closed_form_ridge(X, y, alpha)
            self.assertEqual(fit.status, QPStatus.OPTIMAL)
            self.assertTrue(torch.allclose(fit.w, expected, atol=1e-8, rtol=1e-8))

    def test_repeated_solves_are_deterministic(self):
        X, y = self.train
        backend = QPBackend()
        first = fit_ridge(backend, X, y, 0.2).w
        fit_ridge(backend, X, y, 0.7)
        again = fit_ridge(backend, X, y, 0.2).w
        fresh = fit_ridge(QPBackend(), X, y, 0.2).w
        self.assertTrue(torch.allclose(first, again, atol=1e-10))
        self.assertTrue(torch.equal(first, fresh))

    def test_training_loss_grows_with_regularization(self):
        X, y = self.train
        backend = QPBackend()
        losses = [
            training_loss(fit_ridge(backend, X, y, a).w, X, y)
            for a in (0.0, 0.01, 0.1, 1.0, 10.0)
        ]
        for low, high in zip(losses, losses[1:]):
            self.assertLessEqual(low, high + 1e-12)

    def test_non_convex_alpha_diverges(self):
        X, y = self.train
        with self.assertRaises(InnerSolveDivergence) as ctx:
            fit_ridge(QPBackend(), X, y, -1e4)
        self.assertEqual(ctx.exception.status, QPStatus.UNBOUNDED)
        self.assertEqual(ctx.exception.alpha, -1e4)

    def test_rejects_bad_training_shapes(self):
        X, y = self.train
        with self.assertRaises(DimensionMismatch):
            fit_ridge(QPBackend(), X, y[:-1], 0.1)


class TestSensitivity(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        torch.set_default_dtype(torch.float64)
        X, y = make_regression()
        cls.train, cls.evaluation = split_dataset(X, y)

    def test_perturbation_moves_quadratic_term_only(self):
        p = regularization_perturbation(4)
        self.assertTrue(torch.allclose(p.dQ, torch.eye(4) / 8))
        self.assertIsNone(p.dm)
        self.assertIsNone(p.dL)
        self.assertIsNone(p.dU)

    def test_matches_centered_finite_difference(self):
        X, y = self.train
        alpha, delta = 0.1, 1e-4
        backend = QPBackend()
        fit_ridge(backend, X, y, alpha)
        dw = ridge_sensitivity(backend, 20)

        w_plus = fit_ridge(QPBackend(), X, y, alpha + delta).w
        w_minus = fit_ridge(QPBackend(), X, y, alpha - delta).w
        fd = (w_plus - w_minus) / (2 * delta)
        self.assertTrue(torch.allclose(dw, fd, atol=1e-6, rtol=1e-5))

    def test_matches_implicit_function_theorem(self):
        X, y = self.train
        alpha = 0.25
        backend = QPBackend()
        w = fit_ridge(backend, X, y, alpha).w
        _, A = closed_form_ridge(X, y, alpha)
        expected = -torch.linalg.solve(A, w)
        self.assertTrue(
            torch.allclose(ridge_sensitivity(backend, 20), expected, atol=1e-10)
        )

    def test_idempotent_without_resolve(self):
        X, y = self.train
        backend = QPBackend()
        fit_ridge(backend, X, y, 0.1)
        first = ridge_sensitivity(backend, 20)
        second = ridge_sensitivity(backend, 20)
        self.assertTrue(torch.equal(first, second))

    def test_tracks_latest_solve(self):
        X, y = self.train
        backend = QPBackend()
        fit_ridge(backend, X, y, 0.1)
        at_small = ridge_sensitivity(backend, 20)
        fit_ridge(backend, X, y, 5.0)
        at_large = ridge_sensitivity(backend, 20)
        fresh = QPBackend()
        fit_ridge(fresh, X, y, 5.0)
        self.assertFalse(torch.allclose(at_small, at_large))
        self.assertTrue(torch.allclose(at_large, ridge_sensitivity(fresh, 20), atol=1e-12))

    def test_unavailable_after_failed_solve(self):
        X, y = self.train
        backend = QPBackend()
        fit_ridge(backend, X, y, 0.1)
        with self.assertRaises(InnerSolveDivergence):
            fit_ridge(backend, X, y, -1e4)
        with self.assertRaises(SensitivityUnavailable):
            ridge_sensitivity(backend, 20)

    def test_dimension_check(self):
        X, y = self.train
        backend = QPBackend()
        fit_ridge(backend, X, y, 0.1)
        with self.assertRaises(DimensionMismatch):
            ridge_sensitivity(backend, 19)


class TestLossComposer(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        torch.set_default_dtype(torch.float64)
        X, y = make_regression()
        cls.train, cls.evaluation = split_dataset(X, y)

    def gradient_at(self, alpha):
        backend = QPBackend()
        w = fit_ridge(backend, self.train.X, self.train.y, alpha).w
        residual = evaluation_residual(w, *self.evaluation)
        return loss_gradient(ridge_sensitivity(backend, 20), residual, self.evaluation.X)

    def eval_loss_at(self, alpha):
        w = fit_ridge(QPBackend(), self.train.X, self.train.y, alpha).w
        return evaluation_loss(w, *self.evaluation)

    def test_evaluation_loss_normalisation(self):
        X, y = self.evaluation
        w = torch.zeros(20)
        self.assertAlmostEqual(
            evaluation_loss(w, X, y), float(y @ y) / (2 * 50 * 20), places=10
        )

    def test_matches_finite_difference_of_loss(self):
        for alpha in (0.05, 0.1, 0.33):
            delta = 1e-4
            fd = (self.eval_loss_at(alpha + delta) - self.eval_loss_at(alpha - delta)) / (2 * delta)
            g = self.gradient_at(alpha)
            self.assertAlmostEqual(g, fd, delta=1e-6 + 1e-5 * abs(fd))

    def test_matches_reverse_mode_through_solver(self):
        X, y = self.train
        X_eval, y_eval = self.evaluation
        alpha = torch.tensor(0.1, requires_grad=True)
        problem = ridge_problem(X, y, alpha)
        w, status = solve_qp(*problem)
        self.assertEqual(int(status), QPStatus.OPTIMAL)
        n, d = X_eval.shape
        loss = ((X_eval @ w - y_eval) ** 2).sum() / (2 * n * d)
        loss.backward()
        self.assertAlmostEqual(alpha.grad.item(), self.gradient_at(0.1), places=9)

    def test_formula(self):
        X_eval = torch.tensor([[1.0, 0.0], [0.0, 2.0], [1.0, 1.0]])
        dw = torch.tensor([0.5, -1.0])
        residual = torch.tensor([2.0, 1.0, -1.0])
        # (0.5*2 + -2*1 + -0.5*-1) / (3*2)
        self.assertAlmostEqual(loss_gradient(dw, residual, X_eval), -0.5 / 6)

    def test_mixed_precision_inputs(self):
        X_eval = torch.tensor([[1.0, 0.0], [0.0, 2.0], [1.0, 1.0]], dtype=torch.float32)
        y_eval = torch.tensor([1.0, 1.0, 1.0], dtype=torch.float32)
        w = torch.tensor([1.0, 0.5], dtype=torch.float64)
        residual = evaluation_residual(w, X_eval, y_eval)
        self.assertEqual(residual.dtype, torch.float64)
        self.assertTrue(torch.allclose(residual, torch.tensor([0.0, 0.0, 0.5], dtype=torch.float64)))
        self.assertAlmostEqual(evaluation_loss(w, X_eval, y_eval), 0.25 / 12)

        dw = torch.tensor([0.5, -1.0], dtype=torch.float64)
        residual = torch.tensor([2.0, 1.0, -1.0], dtype=torch.float32)
        self.assertAlmostEqual(loss_gradient(dw, residual, X_eval), -0.5 / 6)

    def test_dimension_mismatch(self):
        X_eval = torch.ones(3, 2)
        with self.assertRaises(DimensionMismatch):
            loss_gradient(torch.ones(3), torch.ones(3), X_eval)
        with self.assertRaises(DimensionMismatch):
            loss_gradient(torch.ones(2), torch.ones(4), X_eval)
        with self.assertRaises(DimensionMismatch):
            loss_gradient(torch.ones(2), torch.ones(3), torch.ones(3))
        with self.assertRaises(DimensionMismatch):
            evaluation_loss(torch.ones(3), X_eval, torch.ones(3))


if __name__ == "__main__":
    unittest.main()
