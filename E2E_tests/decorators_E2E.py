"""This file contains decorators used to inject mock services into tests."""
import inspect


def test_with_mock_service(*mock_service_classes):
    """
    Decorator to inject mock services into a test function.

    Args:
        mock_service_classes: The classes of the mock services to inject, in argument order.
    """

    def decorator(test_func):
        if inspect.iscoroutinefunction(test_func):
            async def async_wrapper(*args, **kwargs):
                # Create fresh instances of the mock services for every run
                mock_services = [cls() for cls in mock_service_classes]
                return await test_func(*mock_services, *args, **kwargs)
            return async_wrapper

        def wrapper(*args, **kwargs):
            mock_services = [cls() for cls in mock_service_classes]
            return test_func(*mock_services, *args, **kwargs)
        return wrapper
    return decorator


# Not a test itself, even though pytest would match the name
test_with_mock_service.__test__ = False
