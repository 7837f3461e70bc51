import typing

GENERIC_DETAIL = "An unexpected error occurred. Please try again later."


def describe_error(
    error: BaseException,
    record_name: typing.Optional[str] = None,
    record_value: typing.Optional[str] = None,
) -> typing.Tuple[str, typing.List[str]]:
    """Turns an error into a short message plus details the user can act on.

    The details are picked by matching known phrases in the error message.

    :param error: The error to describe.
    :param record_name: Name of the DNS record involved, if any.
    :param record_value: Value of the DNS record involved, if any.
    :return: The message and the list of details.
    """
    message = str(error) or error.__class__.__name__
    lowered = message.lower()

    if "dns record not found" in lowered:
        details = ["The DNS record could not be found. It may not have propagated yet."]
        if record_name:
            details.append(f"Check that you created a TXT record with name: {record_name}")
        if record_value:
            details.append(f"And value: {record_value}")
        details.append("DNS changes can take 5 minutes to 48 hours to propagate fully.")
    elif "doesn't match expected value" in lowered:
        details = ["The DNS record was found but has an incorrect value."]
        if record_value:
            details.append(f"The value should be exactly: {record_value}")
        details.append("Make sure there are no extra spaces or quotes in the value.")
    elif "timed out" in lowered or "timeout" in lowered:
        details = [
            "The certificate authority did not finish validating the challenge in time.",
            "Check that the challenge response is still in place and try again in a few minutes.",
        ]
    elif "rate limit" in lowered or "ratelimited" in lowered:
        details = [
            "The certificate authority is limiting the number of requests for this account or domain.",
            "Wait a while before requesting another certificate for this domain.",
        ]
    else:
        details = [GENERIC_DETAIL]

    return message, details
