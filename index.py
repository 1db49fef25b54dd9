from aws_lambda_powertools.utilities.typing import LambdaContext

from imgasset.httpapi import index as httpapi
from imgasset.typing import HttpRequestEvent, HttpResponse


def asset_lambda_handler(
    event: HttpRequestEvent,
    _: LambdaContext,
) -> HttpResponse:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = httpapi.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(ret['statusCode'])

  return ret
