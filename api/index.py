from mangum import Mangum

from settlement.api import app

handler = Mangum(app)
